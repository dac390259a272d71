from __future__ import annotations
import abc
from dataclasses import dataclass
from pathlib import Path

VCARD_MIME = "text/vcard"

@dataclass(frozen=True)
class ContactCard:
    data: bytes
    filename: str
    mime_type: str = VCARD_MIME

class ContactCardUnavailable(Exception):
    pass

class ContactCardSource(abc.ABC):
    """Provides the organization's contact card for intro runs."""

    @abc.abstractmethod
    def load(self) -> ContactCard:
        ...

class FileContactCard(ContactCardSource):
    def __init__(self, path: str | Path):
        self.path = Path(path)

    def load(self) -> ContactCard:
        try:
            data = self.path.read_bytes()
        except OSError as e:
            raise ContactCardUnavailable(f"cannot read contact card at {self.path}: {e.strerror}") from e
        if not data:
            raise ContactCardUnavailable(f"contact card at {self.path} is empty")
        return ContactCard(data=data, filename=self.path.name)
