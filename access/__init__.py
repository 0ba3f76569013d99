"""access/ -- Data-driven request routing and authorization.

The request table maps (method, url) to a controller action, a template and
redirect targets; request_role says which roles may reach each request.

Layer rule: access/ may import from auth/ and core/, never from api/ or web/.
"""
