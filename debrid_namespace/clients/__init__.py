import logging
import threading
from typing import Optional, TYPE_CHECKING

from .base import DebridClient, Download, Torrent, TorrentFile

if TYPE_CHECKING:
    from ..config_manager import EngineSettings


def get_client(settings: "EngineSettings", cancel_event: Optional[threading.Event] = None) -> DebridClient:
    """
    Factory function to get a debrid client instance based on the config.
    """
    client_type = (settings.remote_type or '').lower()
    if not client_type:
        raise ValueError("Remote 'type' not specified in the configuration section.")

    logging.info(f"Creating client of type: {client_type}")

    if client_type == 'realdebrid':
        from .realdebrid import RealDebridClient
        return RealDebridClient(
            api_key=settings.api_key,
            root_url=settings.api_url,
            timeout=settings.request_timeout,
            max_retries=settings.max_retries,
            retry_delay=settings.retry_delay,
            retry_backoff=settings.retry_backoff,
            cancel_event=cancel_event,
        )
    else:
        raise ValueError(f"Unsupported remote type: {client_type}")


__all__ = ['DebridClient', 'Download', 'Torrent', 'TorrentFile', 'get_client']
