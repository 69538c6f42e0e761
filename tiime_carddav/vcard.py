"""
vCard rendering of Tiime records.

Clients become organisation cards and client contacts become individual
cards. Only what CardDAV clients display is mapped; the builder is pure and
holds no state.
"""

from typing import Any, Dict, List, Optional, Tuple, Union

VCARD_VERSION = '4.0'
CONTENT_TYPE = 'text/vcard; charset=utf-8'

Value = Union[str, List[str]]


def escape_text(value: str) -> str:
    """Escape a text value as defined by RFC 6350 section 3.4."""
    return (value.replace('\\', '\\\\')
                 .replace(',', '\\,')
                 .replace(';', '\\;')
                 .replace('\r\n', '\\n')
                 .replace('\n', '\\n'))


def fold_line(line: str, limit: int = 75) -> str:
    """Fold a content line at ``limit`` octets without splitting characters."""
    encoded = line.encode('utf-8')
    if len(encoded) <= limit:
        return line
    parts = []
    current = ''
    size = 0
    for char in line:
        char_size = len(char.encode('utf-8'))
        # continuation lines start with a space, which counts towards the limit
        max_size = limit if not parts else limit - 1
        if size + char_size > max_size:
            parts.append(current)
            current = ''
            size = 0
        current += char
        size += char_size
    parts.append(current)
    return '\r\n '.join(parts)


class VCard:
    """Ordered list of vCard properties."""

    def __init__(self):
        self.properties: List[Tuple[str, Dict[str, str], Value]] = []

    def add(self, name: str, value: Value, **params: str) -> None:
        if isinstance(value, str) and not value:
            return
        if isinstance(value, list) and not any(value):
            return
        self.properties.append((name.upper(), params, value))

    def values(self, name: str) -> List[str]:
        """Return every value of property ``name`` as plain text."""
        name = name.upper()
        result = []
        for prop_name, _, value in self.properties:
            if prop_name == name:
                result.append(' '.join(v for v in value if v) if isinstance(value, list) else value)
        return result

    def get(self, name: str) -> Optional[str]:
        values = self.values(name)
        return values[0] if values else None

    def serialize(self) -> str:
        lines = ['BEGIN:VCARD', f'VERSION:{VCARD_VERSION}']
        for name, params, value in self.properties:
            param_text = ''.join(f';{key.upper()}={param}' for key, param in params.items())
            if isinstance(value, list):
                text = ';'.join(escape_text(component) for component in value)
            else:
                text = escape_text(value)
            lines.append(fold_line(f'{name}{param_text}:{text}'))
        lines.append('END:VCARD')
        return '\r\n'.join(lines) + '\r\n'


def _text(record: Dict[str, Any], *keys: str) -> str:
    for key in keys:
        value = record.get(key)
        if isinstance(value, dict):
            value = value.get('name')
        if value not in (None, ''):
            return str(value).strip()
    return ''


def _address(record: Dict[str, Any]) -> List[str]:
    street = _text(record, 'address')
    complement = _text(record, 'address_complement')
    if complement:
        street = f"{street}\n{complement}" if street else complement
    # post-office box; extended address; street; locality; region; postal code; country
    return ['', '', street, _text(record, 'city'), '', _text(record, 'postal_code'),
            _text(record, 'country')]


def client_to_vcard(client: Dict[str, Any], company_id: int) -> VCard:
    """
    Render a Tiime client as an organisation card.

    Args:
        client: Client record as returned by the Tiime API
        company_id: Company the client belongs to
    """
    card = VCard()
    name = _text(client, 'name') or f"Client {client.get('id')}"
    card.add('UID', f"urn:tiime:{company_id}:client:{client.get('id')}")
    card.add('KIND', 'org')
    card.add('FN', name)
    card.add('ORG', [name])
    card.add('ADR', _address(client), type='work')
    card.add('TEL', _text(client, 'phone'), type='work')
    card.add('EMAIL', _text(client, 'email'), type='work')
    card.add('NOTE', _text(client, 'siren', 'siret'))
    return card


def contact_to_vcard(contact: Dict[str, Any], client: Dict[str, Any], company_id: int) -> VCard:
    """
    Render a contact person of a Tiime client as an individual card.

    Args:
        contact: Contact record from the client's contact list
        client: Client record the contact belongs to
        company_id: Company the client belongs to
    """
    card = VCard()
    first_name = _text(contact, 'firstname', 'first_name')
    last_name = _text(contact, 'lastname', 'last_name')
    full_name = ' '.join(part for part in (first_name, last_name) if part)
    client_name = _text(client, 'name')

    card.add('UID', f"urn:tiime:{company_id}:client:{client.get('id')}:contact:{contact.get('id')}")
    card.add('KIND', 'individual')
    card.add('FN', full_name or _text(contact, 'email') or f"Contact {contact.get('id')}")
    card.add('N', [last_name, first_name, '', '', ''])
    card.add('ORG', [client_name])
    card.add('TITLE', _text(contact, 'job', 'position'))
    card.add('TEL', _text(contact, 'phone'), type='work')
    card.add('EMAIL', _text(contact, 'email'), type='work')
    return card
