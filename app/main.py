from fastapi import FastAPI

from app.core.exceptions import register_exception_handlers
from app.core.logging import configure_logging
from app.core.settings import settings
from app.routers.admin import router as admin_router
from app.routers.auth import router as auth_router
from app.routers.checkout import router as checkout_router
from app.routers.creator import router as creator_router
from app.routers.dashboard import router as dashboard_router
from app.routers.library import router as library_router
from app.routers.products import router as products_router
from app.routers.reviews import router as reviews_router
from app.routers.uploads import router as uploads_router
from app.startup import register_startup

configure_logging(settings.log_level, structured=settings.log_json)

app = FastAPI(title=settings.app_name, debug=settings.debug)

register_exception_handlers(app)
register_startup(app)

app.include_router(auth_router, prefix="/api/auth", tags=["auth"])
app.include_router(products_router, prefix="/api", tags=["products"])
app.include_router(library_router, prefix="/api", tags=["library"])
app.include_router(reviews_router, prefix="/api/reviews", tags=["reviews"])
app.include_router(checkout_router, prefix="/api", tags=["checkout"])
app.include_router(creator_router, prefix="/api/creator/onboarding", tags=["creator"])
app.include_router(dashboard_router, prefix="/api/dashboard", tags=["dashboard"])
app.include_router(uploads_router, prefix="/api/upload", tags=["uploads"])
app.include_router(admin_router, prefix="/api/admin", tags=["admin"])


@app.get("/health")
def health_check():
    return {"status": "ok"}
