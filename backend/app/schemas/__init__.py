"""Pydantic schemas for the rental payments API and provider wire formats."""

from app.schemas.payments import *
from app.schemas.webhooks import *
