"""Mail provider adapters."""

from app.services.mail.base import MailProvider
from app.services.mail.factory import ProviderRegistry

__all__ = ["MailProvider", "ProviderRegistry"]
