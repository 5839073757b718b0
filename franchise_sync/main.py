from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
from franchise_sync.config import get_settings
from franchise_sync.database import init_db
from franchise_sync.routers.admin import router as admin_router
from franchise_sync.routers.webhooks import router as webhooks_router
from franchise_sync.services.stock_cascade import cascade_pool
from franchise_sync.tasks.scheduler import start_scheduler, stop_scheduler

settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize database and scheduler on startup."""
    print("Starting up... Initializing database")
    init_db()
    print("Starting catalog sync scheduler...")
    start_scheduler()
    yield
    print("Shutting down...")
    stop_scheduler()
    cascade_pool.shutdown(wait=True)


app = FastAPI(
    title="Franchise Catalog Sync API",
    description="Keeps franchisee and reseller storefronts in sync with the master catalog",
    version="1.0.0",
    lifespan=lifespan
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure appropriately for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(admin_router, prefix=settings.api_prefix)
app.include_router(webhooks_router, prefix=settings.api_prefix)


@app.get("/")
def root():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "app": "Franchise Catalog Sync API",
        "version": "1.0.0"
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("franchise_sync.main:app", host="0.0.0.0", port=8000)
