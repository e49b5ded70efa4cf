import abc
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Dict, Any, Optional, Tuple

TIME_LAYOUT = "%Y-%m-%dT%H:%M:%S.%fZ"


def parse_timestamp(value: Optional[str]) -> int:
    """Converts an API timestamp such as ``2023-05-14T12:00:00.000Z`` to epoch seconds."""
    if not value:
        return 0
    try:
        return int(datetime.strptime(value, TIME_LAYOUT).replace(tzinfo=timezone.utc).timestamp())
    except ValueError:
        try:
            return int(datetime.fromisoformat(value.replace('Z', '+00:00')).timestamp())
        except ValueError:
            return 0


def link_leaf(link: str) -> str:
    """Returns the file leaf ID of a restricted link (its last path segment)."""
    return link.rstrip('/').rsplit('/', 1)[-1]


@dataclass
class TorrentFile:
    """A file inside a job as reported by ``/torrents/info``."""
    id: int
    path: str
    bytes: int = 0
    selected: bool = False

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "TorrentFile":
        return cls(
            id=int(data.get('id', 0)),
            path=data.get('path', ''),
            bytes=int(data.get('bytes', 0) or 0),
            selected=int(data.get('selected', 0) or 0) == 1,
        )


@dataclass
class Torrent:
    """A remote download job.

    `links` holds one restricted direct-download reference per selected file;
    the last path segment of each reference is the file's stable leaf ID.
    """
    id: str
    name: str
    hash: str
    status: str
    links: List[str] = field(default_factory=list)
    files: List[TorrentFile] = field(default_factory=list)
    size: int = 0
    added: str = ""
    ended: str = ""

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "Torrent":
        return cls(
            id=data.get('id', ''),
            name=data.get('filename', ''),
            hash=data.get('hash', ''),
            status=data.get('status', ''),
            links=list(data.get('links') or []),
            files=[TorrentFile.from_api(f) for f in data.get('files') or []],
            size=int(data.get('bytes', 0) or 0),
            added=data.get('added', '') or '',
            ended=data.get('ended', '') or '',
        )

    @property
    def file_links(self) -> List[str]:
        return [link for link in self.links if link]

    @property
    def selected_file_ids(self) -> List[int]:
        return [f.id for f in self.files if f.selected]

    @property
    def created_at(self) -> int:
        return parse_timestamp(self.ended or self.added)


@dataclass
class Download:
    """A resolved (unrestricted) link: the live URL behind a restricted reference."""
    id: str
    name: str
    size: int
    original_link: str
    url: str
    mime_type: str = ""
    generated: str = ""

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "Download":
        return cls(
            id=data.get('id', ''),
            name=data.get('filename', ''),
            size=int(data.get('filesize', 0) or 0),
            original_link=data.get('link', ''),
            url=data.get('download', ''),
            mime_type=data.get('mimeType', '') or '',
            generated=data.get('generated', '') or '',
        )


class DebridClient(abc.ABC):
    """
    An abstract base class for a debrid service client.
    """

    @abc.abstractmethod
    def list_downloads(self, offset: int, limit: int) -> Tuple[List[Download], int]:
        """Returns one page of resolved links and the total count reported by the server."""
        pass

    @abc.abstractmethod
    def list_torrents(self, offset: int, limit: int) -> Tuple[List[Torrent], int]:
        """Returns one page of jobs and the total count reported by the server."""
        pass

    @abc.abstractmethod
    def torrent_info(self, torrent_id: str) -> Torrent:
        """Gets detailed information, including the file list, for a single job."""
        pass

    @abc.abstractmethod
    def unrestrict_link(self, link: str) -> Download:
        """Resolves a restricted reference into a live URL. Raises BrokenLinkError on 503/404."""
        pass

    @abc.abstractmethod
    def add_magnet(self, torrent_hash: str) -> str:
        """Submits a job by content hash and returns the new job ID."""
        pass

    @abc.abstractmethod
    def select_files(self, torrent_id: str, file_ids: List[int]) -> None:
        """Selects which files of a job should be downloaded."""
        pass

    @abc.abstractmethod
    def delete_torrent(self, torrent_id: str) -> None:
        """Deletes a job."""
        pass

    @abc.abstractmethod
    def delete_download(self, download_id: str) -> None:
        """Deletes a resolved link from the downloads list."""
        pass

    @abc.abstractmethod
    def get_user(self) -> Dict[str, Any]:
        """Returns the account information. Used to verify connectivity."""
        pass

    @abc.abstractmethod
    def open_url(self, url: str, headers: Optional[Dict[str, str]] = None) -> Any:
        """Opens a direct URL for streaming. Raises BrokenLinkError on 503/404."""
        pass
