"""
Resource path codec for the CardDAV namespace.

This module converts between CardDAV resource paths and the Tiime identifiers
they address. Two layouts are supported:

- multi-tenant: ``/me/contacts/{company}/`` is an address book and
  ``/me/contacts/{company}/{client}[/{contact}]`` an address object
- single-tenant: the company is fixed by configuration, ``/me/contacts/`` is
  the only address book and ``/me/contacts/{client}[/{contact}]`` an object
"""

import re
from typing import List, NamedTuple, Optional

HOME_SET_PATH = '/me/contacts/'
PRINCIPAL_PATH = '/me/'

_ID_PATTERN = re.compile(r'[0-9]+')


class PathParseError(ValueError):
    """Raised when a resource path does not match the expected layout."""
    pass


class EntityKey(NamedTuple):
    """Identifiers addressed by an item path.

    ``contact_id`` is None when the path addresses the client record itself.
    """
    org_id: int
    client_id: int
    contact_id: Optional[int] = None


def _parse_id(segment: str, path: str) -> int:
    if not _ID_PATTERN.fullmatch(segment):
        raise PathParseError(f"Invalid identifier {segment!r} in path {path!r}")
    return int(segment)


class PathCodec:
    """
    Bidirectional mapping between resource paths and entity keys.

    Args:
        home: Address book home set collection, with a trailing slash
        org_id: Fixed company identifier for single-tenant deployments
    """
    
    def __init__(self, home: str = HOME_SET_PATH, org_id: Optional[int] = None):
        if not home.startswith('/') or not home.endswith('/'):
            raise ValueError(f"Home collection must start and end with '/': {home!r}")
        if org_id is not None and org_id < 0:
            raise ValueError(f"Company identifier must not be negative: {org_id}")
        self.home = home
        self.org_id = org_id
    
    @property
    def single_tenant(self) -> bool:
        return self.org_id is not None
    
    def _segments(self, path: str) -> List[str]:
        """Split the part of ``path`` below the home collection into segments."""
        if path == self.home.rstrip('/'):
            return []
        if not path.startswith(self.home):
            raise PathParseError(f"Path {path!r} is outside {self.home!r}")
        rest = path[len(self.home):]
        if not rest:
            return []
        return rest.split('/')
    
    def decode_collection_path(self, path: str) -> int:
        """
        Extract the company identifier from an address book path.
        
        Deeper paths are accepted, so an item path yields the identifier of
        the address book containing it.
        
        Raises:
            PathParseError: If the company segment is missing or not numeric
        """
        segments = self._segments(path)
        if self.single_tenant:
            return self.org_id
        if not segments or not segments[0]:
            raise PathParseError(f"Missing company identifier in path {path!r}")
        return _parse_id(segments[0], path)
    
    def decode_item_path(self, path: str) -> EntityKey:
        """
        Extract the full entity key from an address object path.
        
        The trailing contact segment is optional; without it the key addresses
        the client record.
        
        Raises:
            PathParseError: If the path does not name an address object
        """
        segments = self._segments(path)
        if self.single_tenant:
            org_id = self.org_id
        else:
            if not segments:
                raise PathParseError(f"Missing company identifier in path {path!r}")
            org_id = _parse_id(segments[0], path)
            segments = segments[1:]
        
        if len(segments) not in (1, 2):
            raise PathParseError(f"Path {path!r} does not address a contact")
        
        client_id = _parse_id(segments[0], path)
        contact_id = _parse_id(segments[1], path) if len(segments) == 2 else None
        return EntityKey(org_id, client_id, contact_id)
    
    def encode_collection_path(self, org_id: int) -> str:
        if self.single_tenant:
            return self.home
        return f"{self.home}{org_id}/"
    
    def encode_item_path(self, key: EntityKey) -> str:
        path = f"{self.encode_collection_path(key.org_id)}{key.client_id}"
        if key.contact_id is not None:
            path += f"/{key.contact_id}"
        return path
    
    def is_home_path(self, path: str) -> bool:
        return path in (self.home, self.home.rstrip('/'))
    
    def is_collection_path(self, path: str) -> bool:
        """Return True when ``path`` names an address book exactly."""
        if self.single_tenant:
            return self.is_home_path(path)
        try:
            segments = self._segments(path)
        except PathParseError:
            return False
        if segments and segments[-1] == '':
            segments = segments[:-1]
        return len(segments) == 1 and bool(_ID_PATTERN.fullmatch(segments[0]))
