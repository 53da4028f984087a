"""Email provider integrations."""

from src.integrations.email.resend_client import EmailClientError, EmailMessage, ResendClient, get_resend_client

__all__ = ["EmailClientError", "EmailMessage", "ResendClient", "get_resend_client"]
