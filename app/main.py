from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
import logging
import os
from dotenv import load_dotenv

# ----------------------------------------------------
# 🔐 LOAD .ENV
# ----------------------------------------------------
load_dotenv(override=True)

from app.config import settings
from app.db import engine
from models import Base

# Routers
from routers import stripe_webhook, cron
from routers import auth_admin, admin_affiliates, payouts_admin, admin_sync

# ----------------------------------------------------
# 📝 LOGGING
# ----------------------------------------------------
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

# ----------------------------------------------------
# 🚀 FASTAPI APP
# ----------------------------------------------------
app = FastAPI(
    title="Affiliate Commission Engine",
    version="1.0.0",
)

# ----------------------------------------------------
# 🌐 CORS CONFIG
# ----------------------------------------------------
origins = [o.strip() for o in settings.cors_origins.split(",") if o.strip()]

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ----------------------------------------------------
# 🟢 GLOBAL OPTIONS HANDLER
# ----------------------------------------------------
@app.options("/{path:path}")
async def options_handler(path: str, request: Request):
    return Response(status_code=204)

# ----------------------------------------------------
# 🗄️ DB INIT (SOLO DEV)
# ----------------------------------------------------
if os.getenv("ENV", "dev") == "dev" and os.getenv("DB_AUTO_CREATE") == "1":
    Base.metadata.create_all(bind=engine)

# ----------------------------------------------------
# 🔌 ROUTERS
# ----------------------------------------------------
app.include_router(stripe_webhook.router)
app.include_router(cron.router)

app.include_router(auth_admin.router)
app.include_router(admin_affiliates.router)
app.include_router(payouts_admin.router)
app.include_router(admin_sync.router)

# ----------------------------------------------------
# 🏠 BASE
# ----------------------------------------------------
@app.get("/")
def root():
    return {"message": "Affiliate commission engine attivo"}

@app.get("/health")
def health():
    return {"ok": True}
