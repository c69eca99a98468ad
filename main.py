import logging
import os

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles

from referralweb.api import router as api_router
from referralweb.attachment_store import BLOB_BACKEND, UPLOAD_DIR, blob_store_from_env
from referralweb.auth import router as auth_router
from referralweb.record_store import DB_PATH, SqliteReferralStore

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("referralweb")

ALLOWED_ORIGINS = [
    o.strip() for o in os.getenv("REFERRAL_ALLOWED_ORIGINS", "*").split(",") if o.strip()
]

app = FastAPI(
    title="ReferralWeb",
    version="0.1.0"
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=ALLOWED_ORIGINS != ["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.on_event("startup")
def startup_event():
    store = SqliteReferralStore(DB_PATH)
    store.open()
    app.state.store = store
    app.state.blob_store = blob_store_from_env()
    logger.info("ReferralWeb backend started (blob backend: %s)", BLOB_BACKEND)


@app.on_event("shutdown")
def shutdown_event():
    store = getattr(app.state, "store", None)
    if store is not None:
        store.close()
    logger.info("ReferralWeb backend stopped")


# ======================
# API ROUTES
# ======================
app.include_router(auth_router, prefix="/api")
app.include_router(api_router, prefix="/api")

# ======================
# UPLOADED DOCUMENTS (local backend only)
# ======================
if BLOB_BACKEND == "local":
    os.makedirs(UPLOAD_DIR, exist_ok=True)
    app.mount("/uploads", StaticFiles(directory=UPLOAD_DIR), name="uploads")
