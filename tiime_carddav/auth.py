"""
HTTP Basic credential handling.

The raw ``Authorization`` header value is the session cache key; this module
turns it into the email/password pair used to log in to Tiime.
"""

import base64
import binascii
from typing import NamedTuple


class CredentialFormatError(ValueError):
    """Raised when a presented credential cannot be decoded."""
    pass


class Identity(NamedTuple):
    """Upstream login inputs decoded from a credential."""
    email: str
    password: str
    
    def __repr__(self) -> str:
        return f"Identity(email={self.email!r}, password='****')"


def parse_basic_authorization(authorization: str) -> Identity:
    """
    Decode a ``Basic`` authorization header value.
    
    The decoded payload is split at the first colon only, so passwords may
    contain colons.
    
    Args:
        authorization: Header value, e.g. ``Basic QWxhZGRpbjpvcGVuIHNlc2FtZQ==``
        
    Returns:
        Decoded identity
        
    Raises:
        CredentialFormatError: If the scheme, encoding or payload is invalid
    """
    if not authorization:
        raise CredentialFormatError("Missing authorization header")
    
    parts = authorization.split(' ')
    if len(parts) != 2:
        raise CredentialFormatError("Bad authorization header")
    
    scheme, token = parts
    if scheme != 'Basic':
        raise CredentialFormatError(f"Unsupported authorization scheme: {scheme}")
    
    try:
        payload = base64.b64decode(token, validate=True).decode('utf-8')
    except (binascii.Error, UnicodeDecodeError) as e:
        raise CredentialFormatError(f"Invalid base64 credential: {e}")
    
    email, separator, password = payload.partition(':')
    if not separator:
        raise CredentialFormatError("Credential payload has no user/password separator")
    
    return Identity(email, password)


def encode_basic_authorization(email: str, password: str) -> str:
    """Build the ``Basic`` header value for an email/password pair."""
    credentials = base64.b64encode(f"{email}:{password}".encode('utf-8')).decode('ascii')
    return f"Basic {credentials}"
