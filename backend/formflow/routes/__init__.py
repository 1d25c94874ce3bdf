"""FormFlow Routes"""

from .submissions import router as submissions_router
from .templates import router as templates_router
from .storage import router as storage_router
from .downloads import router as downloads_router

__all__ = [
    "submissions_router",
    "templates_router",
    "storage_router",
    "downloads_router",
]
