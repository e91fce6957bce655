"""Shared infrastructure for the WhatsApp session gateway: settings, logging, database and Redis."""
