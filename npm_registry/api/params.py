"""
Package name handling shared by the routers.

Every package route exists twice: ``/{name}/...`` and
``/{scope:scope}/{name}/...``. The ``scope`` convertor only matches a path
segment starting with ``@``, so ``/@babel/core`` reaches the scoped route
while ``/left-pad/1.0.0`` reaches the plain one. npm sends scoped names
percent-encoded (``/@babel%2fcore``); the path is decoded before routing,
so both spellings arrive here the same way.
"""

from fastapi import Request
from starlette.convertors import Convertor, register_url_convertor


class ScopeConvertor(Convertor):
    regex = "@[^/]+"

    def convert(self, value: str) -> str:
        return value

    def to_string(self, value: str) -> str:
        return value


register_url_convertor("scope", ScopeConvertor())


def package_name(request: Request) -> str:
    """Full package name (``name`` or ``@scope/name``) of the matched route."""
    params = request.path_params
    scope = params.get("scope")
    if scope:
        return f"{scope}/{params['name']}"
    return params["name"]
