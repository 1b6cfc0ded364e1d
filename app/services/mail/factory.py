"""Factory for mail provider instances."""

from __future__ import annotations

from app.config import Settings
from app.models.states import Provider
from app.services.mail.base import MailProvider
from app.services.mail.gmail import GmailProvider
from app.services.mail.http import ProviderHttp
from app.services.mail.microsoft import MicrosoftProvider


class ProviderRegistry:
    """Provider adapters keyed by :class:`Provider`, built once per process."""

    def __init__(self, providers: dict[Provider, MailProvider]) -> None:
        self._providers = providers

    @classmethod
    def from_settings(cls, settings: Settings, http: ProviderHttp | None = None) -> ProviderRegistry:
        http = http or ProviderHttp(timeout=settings.provider_timeout_seconds)
        return cls(
            {
                Provider.GOOGLE: GmailProvider(
                    http, settings.google_client_id, settings.google_client_secret
                ),
                Provider.MICROSOFT: MicrosoftProvider(
                    http, settings.microsoft_client_id, settings.microsoft_client_secret
                ),
            }
        )

    def get(self, provider: Provider | str) -> MailProvider:
        """Return the adapter for ``provider``."""
        try:
            return self._providers[Provider(provider)]
        except (KeyError, ValueError):
            raise ValueError(f"Unknown mail provider: {provider}") from None
