"""Centralized brand configuration for user-facing copy."""

BRAND_NAME = "Hexwave"
BRAND_APP_DESCRIPTION = "Credits and billing API for the Hexwave AI content studio"
