from nphies_poll.routes.health import router as health_router
from nphies_poll.routes.system_poll import router as system_poll_router

__all__ = ["health_router", "system_poll_router"]
