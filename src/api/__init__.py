"""HTTP API: app keys shared by the server, routes and metrics modules."""

from aiohttp import web

ctx_key = web.AppKey("ctx", dict)
api_key_key = web.AppKey("api_key", str)

API_VERSION = "1.0.0"
