"""Builds the pipeline's components from settings."""

from __future__ import annotations

import importlib
from dataclasses import dataclass

from workshop_reminders.config import Settings, get_settings
from workshop_reminders.domain.bus import EventBus
from workshop_reminders.domain.errors import ProviderNotConfigured
from workshop_reminders.domain.handlers import HandlerRegistry
from workshop_reminders.domain.ports import (
    BookingContextProvider,
    EmailChannel,
    ReminderStore,
)
from workshop_reminders.observability import get_logger
from workshop_reminders.repos.memory import BookingDirectory, InMemoryReminderStore
from workshop_reminders.repos.sql import SqlReminderStore
from workshop_reminders.services.email import LogEmailChannel
from workshop_reminders.services.processor import ReminderProcessor
from workshop_reminders.services.templates import TemplateCatalog

logger = get_logger(__name__)


@dataclass
class Pipeline:
    settings: Settings
    store: ReminderStore
    provider: BookingContextProvider
    channel: EmailChannel
    catalog: TemplateCatalog
    bus: EventBus
    processor: ReminderProcessor
    handlers: HandlerRegistry

    @property
    def directory(self) -> BookingDirectory | None:
        """The local booking directory, when bookings are registered in-process."""
        return self.provider if isinstance(self.provider, BookingDirectory) else None

    def close(self) -> None:
        if isinstance(self.store, SqlReminderStore):
            self.store.close()


def build_store(settings: Settings) -> ReminderStore:
    if settings.store_backend == "sql":
        return SqlReminderStore.from_url(settings.database_url)
    return InMemoryReminderStore()


def load_booking_provider(path: str) -> BookingContextProvider:
    """Resolve ``package.module:attribute`` to a booking context provider.

    A class or factory is called with no arguments; anything else is used
    as the provider itself.
    """
    module_name, _, attribute = path.partition(":")
    if not module_name or not attribute:
        raise ProviderNotConfigured(
            f"Booking provider must look like 'package.module:attribute', got {path!r}"
        )
    try:
        target = getattr(importlib.import_module(module_name), attribute)
    except (ImportError, AttributeError) as exc:
        raise ProviderNotConfigured(f"Cannot load booking provider {path!r}: {exc}") from exc

    provider = target
    if isinstance(provider, type) or not hasattr(provider, "get_booking_context"):
        if not callable(provider):
            raise ProviderNotConfigured(f"{path!r} is neither a provider nor a factory")
        provider = provider()
    if not hasattr(provider, "get_booking_context"):
        raise ProviderNotConfigured(
            f"{path!r} does not provide get_booking_context(booking_id)"
        )
    logger.info("Loaded booking provider", provider=path)
    return provider


def build_pipeline(
    settings: Settings | None = None,
    *,
    store: ReminderStore | None = None,
    provider: BookingContextProvider | None = None,
    channel: EmailChannel | None = None,
    catalog: TemplateCatalog | None = None,
) -> Pipeline:
    """Wire store, collaborators, bus and processor; any piece can be injected.

    Without an injected provider, ``settings.booking_provider`` is loaded;
    when that is unset too, bookings come from an in-process
    :class:`BookingDirectory` filled through the booking intake route.
    """
    settings = settings or get_settings()
    if provider is None:
        if settings.booking_provider:
            provider = load_booking_provider(settings.booking_provider)
        else:
            provider = BookingDirectory()
    store = store if store is not None else build_store(settings)
    channel = channel if channel is not None else LogEmailChannel()
    catalog = catalog or TemplateCatalog()
    bus = EventBus()
    processor = ReminderProcessor.from_settings(
        settings, store, provider, channel, catalog, bus
    )
    handlers = HandlerRegistry(bus=bus, store=store, provider=provider)
    return Pipeline(
        settings=settings,
        store=store,
        provider=provider,
        channel=channel,
        catalog=catalog,
        bus=bus,
        processor=processor,
        handlers=handlers,
    )
