"""
CardDAV backend serving Tiime companies as address books.

Each company is an address book; each client of the company is an address
object, and so is each contact person of a client. The backend is read-only:
every write operation is rejected.
"""

import hashlib
import logging
from typing import Any, Dict, Iterator, List, NamedTuple, Optional

from tiime_carddav.paths import PRINCIPAL_PATH, EntityKey, PathCodec
from tiime_carddav.upstream.base import iter_pages
from tiime_carddav.vcard import VCard, client_to_vcard, contact_to_vcard

logger = logging.getLogger(__name__)

MAX_RESOURCE_SIZE = 100 * 1024


class UnsupportedOperationError(Exception):
    """Raised for every write operation; the gateway is read-only."""
    pass


class NotFoundError(Exception):
    """Raised when a path does not name an existing resource."""
    pass


class AddressBook(NamedTuple):
    path: str
    name: str
    description: str
    max_resource_size: int = MAX_RESOURCE_SIZE


class AddressObject(NamedTuple):
    path: str
    etag: str
    card: VCard

    @property
    def data(self) -> str:
        return self.card.serialize()


def make_address_object(path: str, card: VCard) -> AddressObject:
    digest = hashlib.sha1(card.serialize().encode('utf-8')).hexdigest()
    return AddressObject(path, f'"{digest}"', card)


class TiimeBackend:
    """
    Read-only backend bound to one upstream session.

    Args:
        session: Authenticated Tiime session for the current request
        codec: Path codec for the deployment layout
        page_size: Number of records fetched per upstream page
    """

    def __init__(self, session, codec: PathCodec, page_size: int = 100):
        self.session = session
        self.codec = codec
        self.page_size = page_size

    def current_user_principal(self) -> str:
        return PRINCIPAL_PATH

    def address_book_home_set_path(self) -> str:
        return self.codec.home

    def _companies(self) -> Iterator[Dict[str, Any]]:
        return iter_pages(self.session.fetch_page, (), self.page_size)

    def _address_book(self, company: Dict[str, Any]) -> AddressBook:
        name = company.get('name') or str(company.get('id'))
        return AddressBook(
            path=self.codec.encode_collection_path(company['id']),
            name=f"Tiime {name}",
            description=f"Contacts Tiime de {name}",
        )

    def list_address_books(self) -> List[AddressBook]:
        """List the address books of the logged-in user."""
        companies = list(self._companies())
        if self.codec.single_tenant:
            companies = [c for c in companies if c.get('id') == self.codec.org_id]
            if not companies:
                companies = [{'id': self.codec.org_id}]
        return [self._address_book(company) for company in companies]

    def get_address_book(self, path: str) -> AddressBook:
        if not path.endswith('/'):
            path += '/'
        for address_book in self.list_address_books():
            if address_book.path == path:
                return address_book
        raise NotFoundError(f"Address book not found: {path}")

    def create_address_book(self, address_book: AddressBook) -> None:
        raise UnsupportedOperationError("Creating address books is not supported")

    def delete_address_book(self, path: str) -> None:
        raise UnsupportedOperationError("Deleting address books is not supported")

    def get_address_object(self, path: str) -> AddressObject:
        """
        Fetch one client or client contact.

        Raises:
            PathParseError: If ``path`` is not an address object path
            UpstreamNotFoundError: If Tiime has no such record
        """
        key = self.codec.decode_item_path(path)
        client = self.session.get_client(key.org_id, key.client_id)
        if key.contact_id is None:
            card = client_to_vcard(client, key.org_id)
        else:
            contact = self.session.get_client_contact(key.org_id, key.client_id, key.contact_id)
            card = contact_to_vcard(contact, client, key.org_id)
        return make_address_object(self.codec.encode_item_path(key), card)

    def list_address_objects(self, path: str) -> List[AddressObject]:
        """
        List every client of an address book, each followed by its contacts.

        Raises:
            PathParseError: If ``path`` is not inside an address book
        """
        org_id = self.codec.decode_collection_path(path)
        objects = []
        for client in iter_pages(self.session.fetch_page, (org_id,), self.page_size):
            client_key = EntityKey(org_id, client['id'])
            objects.append(make_address_object(
                self.codec.encode_item_path(client_key), client_to_vcard(client, org_id)
            ))
            for contact in iter_pages(self.session.fetch_page, (org_id, client['id']), self.page_size):
                contact_key = client_key._replace(contact_id=contact['id'])
                objects.append(make_address_object(
                    self.codec.encode_item_path(contact_key), contact_to_vcard(contact, client, org_id)
                ))
        logger.debug(f"Listed {len(objects)} address objects in company {org_id}")
        return objects

    def query_address_objects(self, path: str, query) -> List[AddressObject]:
        """
        List address objects matching ``query``.

        Args:
            path: Address book path
            query: Object with a ``filter(objects)`` method, or None for all
        """
        objects = self.list_address_objects(path)
        if query is None:
            return objects
        return query.filter(objects)

    def put_address_object(self, path: str, card: Optional[str] = None) -> None:
        raise UnsupportedOperationError("Writing contacts is not supported")

    def delete_address_object(self, path: str) -> None:
        raise UnsupportedOperationError("Deleting contacts is not supported")
