import os
from pathlib import Path

from dotenv import load_dotenv

# Load .env from project root
env_path = Path(__file__).resolve().parent.parent / ".env"
load_dotenv(dotenv_path=env_path)

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./court_booking.db")

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

# MercadoPago
MERCADOPAGO_ACCESS_TOKEN = os.getenv("MERCADOPAGO_ACCESS_TOKEN")
MERCADOPAGO_API_URL = os.getenv("MERCADOPAGO_API_URL", "https://api.mercadopago.com")
PAYMENT_CURRENCY = os.getenv("PAYMENT_CURRENCY", "ARS")
GATEWAY_TIMEOUT_SECONDS = float(os.getenv("GATEWAY_TIMEOUT_SECONDS", "10"))

# Frontend base URL for checkout return pages
FRONTEND_URL = os.getenv("FRONTEND_URL", "http://localhost:5173")

# All slot dates and times are local to the club
BUSINESS_TIMEZONE = os.getenv("BUSINESS_TIMEZONE", "America/Argentina/Buenos_Aires")

ADMIN_API_TOKEN = os.getenv("ADMIN_API_TOKEN")

# Optional collaborator that sends the confirmation e-mail / QR code
NOTIFY_WEBHOOK_URL = os.getenv("NOTIFY_WEBHOOK_URL")
NOTIFY_TIMEOUT_SECONDS = float(os.getenv("NOTIFY_TIMEOUT_SECONDS", "5"))

PENDING_TTL_MINUTES = int(os.getenv("PENDING_TTL_MINUTES", "60"))
