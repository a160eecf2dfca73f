"""FastAPI application entry point."""
from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text

from skydrive.config import settings
from skydrive.database import async_session, create_tables, engine
from skydrive.logging_config import setup_logging


def build_file_manager():
    """Wire the collaborators selected by settings into a FileManager."""
    from skydrive.services.auth import SupabaseAuth
    from skydrive.services.file_manager import FileManager, build_tus_transport
    from skydrive.services.file_storage import build_object_store
    from skydrive.services.metadata_store import MetadataStore

    auth = SupabaseAuth(settings)

    async def access_token():
        session = await auth.get_session()
        return session.access_token if session else None

    return FileManager(
        auth=auth,
        object_store=build_object_store(access_token, settings),
        metadata=MetadataStore(async_session),
        tus_transport=build_tus_transport(settings),
        settings=settings,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create tables, build the file manager, drain uploads on shutdown."""
    setup_logging()
    await create_tables()

    if getattr(app.state, "file_manager", None) is None:
        app.state.file_manager = build_file_manager()
    await app.state.file_manager.start()

    yield

    # Cleanup
    await app.state.file_manager.close()
    await engine.dispose()


app = FastAPI(
    title="SkyDrive API",
    version="1.0.0",
    description="File uploads, trash and sharing on top of hosted storage.",
    lifespan=lifespan,
)

# CORS
origins = [o.strip() for o in settings.CORS_ORIGINS.split(",")]
app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/api/health")
async def health_check():
    """Verify API and database connectivity."""
    try:
        async with async_session() as db:
            await db.execute(text("SELECT 1"))
        return {"status": "ok", "database": "connected"}
    except Exception as e:
        return {"status": "error", "database": str(e)}


# Register routers
from skydrive.routes.auth import router as auth_router
from skydrive.routes.files import router as files_router
from skydrive.routes.share import router as share_router
from skydrive.routes.storage import router as storage_router
app.include_router(auth_router)
app.include_router(files_router)
app.include_router(share_router)
app.include_router(storage_router)
