"""Remote calendar provider clients."""

from timeflow.providers.base import RemoteCalendarClient
from timeflow.providers.google import GoogleCalendarClient
from timeflow.providers.microsoft import MicrosoftCalendarClient

__all__ = ["GoogleCalendarClient", "MicrosoftCalendarClient", "RemoteCalendarClient"]
