from mindscript.gateway.api.v1.jobs import router as jobs_router
from mindscript.gateway.api.v1.ws import router as ws_router

__all__ = ["routers"]
routers = [jobs_router, ws_router]
