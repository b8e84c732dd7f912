"""
Client Directory Module

Read-only lookup of the display name used in ledger concepts. Client records
themselves are maintained elsewhere; the lending core never writes them.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, Optional
from enum import Enum

from .exceptions import NotFoundError
from .storage import StorageInterface
from .logging_config import get_logger


logger = get_logger("lending.clients")


class ClientType(Enum):
    PERSON = "PERSONA_FISICA"
    COMPANY = "EMPRESA"


@dataclass
class ClientRecord:
    id: str
    client_type: ClientType = ClientType.PERSON
    first_name: str = ""
    last_name: str = ""
    company_name: Optional[str] = None

    @property
    def display_name(self) -> str:
        """Companies show their name; persons show 'Last, First'"""
        if self.client_type == ClientType.COMPANY:
            return self.company_name or self.first_name or "Unnamed company"
        name = f"{self.last_name}, {self.first_name}".strip().strip(",").strip()
        return name or "Unnamed client"

    @classmethod
    def from_dict(cls, data: Dict) -> 'ClientRecord':
        return cls(
            id=data['id'],
            client_type=ClientType(data.get('client_type', ClientType.PERSON.value)),
            first_name=data.get('first_name') or "",
            last_name=data.get('last_name') or "",
            company_name=data.get('company_name')
        )


class ClientDirectory(ABC):
    """Read-only client lookup"""

    @abstractmethod
    def lookup(self, client_id: str) -> str:
        """
        Display name for a client.

        Raises:
            NotFoundError: If the client is unknown
        """
        pass


class InMemoryClientDirectory(ClientDirectory):
    def __init__(self, clients: Optional[Dict[str, ClientRecord]] = None):
        self._clients = dict(clients or {})

    def add(self, client: ClientRecord) -> None:
        self._clients[client.id] = client

    def lookup(self, client_id: str) -> str:
        client = self._clients.get(client_id)
        if client is None:
            raise NotFoundError(f"Client {client_id} not found", {"client_id": client_id})
        return client.display_name


class StorageClientDirectory(ClientDirectory):
    """Reads the ``clients`` table maintained by the client screens"""

    def __init__(self, storage: StorageInterface, table_name: str = "clients"):
        self.storage = storage
        self.table_name = table_name

    def lookup(self, client_id: str) -> str:
        data = self.storage.load(self.table_name, client_id)
        if not data or data.get('deleted'):
            raise NotFoundError(f"Client {client_id} not found", {"client_id": client_id})
        return ClientRecord.from_dict(data).display_name


def resolve_display_name(directory: Optional[ClientDirectory], client_id: str,
                         placeholder: str = "unidentified client") -> str:
    """
    Display name for ledger concepts. Never raises: an unavailable or failing
    directory degrades to ``placeholder`` so the financial operation proceeds.
    """
    if directory is None:
        return placeholder
    try:
        return directory.lookup(client_id) or placeholder
    except Exception as e:
        logger.warning(f"Client lookup failed for {client_id}, using placeholder: {e}")
        return placeholder
