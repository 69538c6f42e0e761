"""
CardDAV protocol handling.

This module turns WebDAV/CardDAV requests (RFC 4918, RFC 6352) into calls on
a read-only backend and renders multi-status XML responses. It is independent
of the web framework: requests and responses are plain value objects.
"""

import logging
import xml.etree.ElementTree as ET
from typing import Any, Callable, Dict, List, NamedTuple, Optional, Tuple
from urllib.parse import quote, unquote, urlparse

from tiime_carddav.backend import AddressObject, NotFoundError, UnsupportedOperationError
from tiime_carddav.paths import PRINCIPAL_PATH, PathCodec, PathParseError
from tiime_carddav.upstream.base import UpstreamError, UpstreamNotFoundError
from tiime_carddav.vcard import CONTENT_TYPE, VCARD_VERSION, VCard

logger = logging.getLogger(__name__)

DAV_NS = 'DAV:'
CARDDAV_NS = 'urn:ietf:params:xml:ns:carddav'

ET.register_namespace('d', DAV_NS)
ET.register_namespace('card', CARDDAV_NS)

WELL_KNOWN_PATH = '/.well-known/carddav'
ALLOWED_METHODS = 'OPTIONS, GET, HEAD, PROPFIND, REPORT'
WRITE_METHODS = ('PUT', 'DELETE', 'MKCOL', 'PROPPATCH', 'COPY', 'MOVE', 'LOCK', 'UNLOCK')

STATUS_TEXT = {
    200: 'OK', 404: 'Not Found',
}


def dav(name: str) -> str:
    return f'{{{DAV_NS}}}{name}'


def card(name: str) -> str:
    return f'{{{CARDDAV_NS}}}{name}'


class DavRequest(NamedTuple):
    method: str
    path: str
    headers: Dict[str, str]
    body: bytes = b''

    def header(self, name: str, default: Optional[str] = None) -> Optional[str]:
        return self.headers.get(name.lower(), default)


class DavResponse(NamedTuple):
    status: int
    headers: Dict[str, str]
    body: bytes = b''


class DavError(Exception):
    """Raised to abort a request with a fixed status."""

    def __init__(self, status: int, message: str):
        super().__init__(message)
        self.status = status


# -- addressbook-query filters ------------------------------------------------

class TextMatch(NamedTuple):
    text: str
    match_type: str = 'contains'
    collation: str = 'i;unicode-casemap'
    negate: bool = False

    def matches(self, value: str) -> bool:
        needle, haystack = self.text, value
        if self.collation != 'i;octet':
            needle, haystack = needle.casefold(), haystack.casefold()
        if self.match_type == 'equals':
            result = haystack == needle
        elif self.match_type == 'starts-with':
            result = haystack.startswith(needle)
        elif self.match_type == 'ends-with':
            result = haystack.endswith(needle)
        else:
            result = needle in haystack
        return result != self.negate


class PropFilter(NamedTuple):
    name: str
    test: str = 'anyof'
    is_not_defined: bool = False
    text_matches: Tuple[TextMatch, ...] = ()

    def matches(self, vcard: VCard) -> bool:
        values = vcard.values(self.name)
        if self.is_not_defined:
            return not values
        if not values:
            return False
        if not self.text_matches:
            return True
        combine = all if self.test == 'allof' else any
        return any(combine(match.matches(value) for match in self.text_matches) for value in values)


class AddressBookQuery:
    """Parsed ``addressbook-query`` filter and result limit."""

    def __init__(self, prop_filters: List[PropFilter] = None, test: str = 'anyof',
                 limit: Optional[int] = None):
        self.prop_filters = prop_filters or []
        self.test = test
        self.limit = limit

    def matches(self, vcard: VCard) -> bool:
        if not self.prop_filters:
            return True
        combine = all if self.test == 'allof' else any
        return combine(prop_filter.matches(vcard) for prop_filter in self.prop_filters)

    def filter(self, objects: List[AddressObject]) -> List[AddressObject]:
        result = [obj for obj in objects if self.matches(obj.card)]
        if self.limit is not None:
            result = result[:self.limit]
        return result

    @classmethod
    def from_element(cls, root: ET.Element) -> 'AddressBookQuery':
        prop_filters = []
        test = 'anyof'
        filter_el = root.find(card('filter'))
        if filter_el is not None:
            test = filter_el.get('test', 'anyof')
            for pf in filter_el.findall(card('prop-filter')):
                matches = tuple(
                    TextMatch(
                        text=tm.text or '',
                        match_type=tm.get('match-type', 'contains'),
                        collation=tm.get('collation', 'i;unicode-casemap'),
                        negate=tm.get('negate-condition', 'no') == 'yes',
                    )
                    for tm in pf.findall(card('text-match'))
                )
                prop_filters.append(PropFilter(
                    name=pf.get('name', ''),
                    test=pf.get('test', 'anyof'),
                    is_not_defined=pf.find(card('is-not-defined')) is not None,
                    text_matches=matches,
                ))

        limit = None
        nresults = root.find(f"{card('limit')}/{card('nresults')}")
        if nresults is not None:
            try:
                limit = int((nresults.text or '').strip())
            except ValueError:
                raise DavError(400, f"Invalid nresults: {nresults.text!r}")
            if limit < 0:
                raise DavError(400, f"Invalid nresults: {limit}")
        return cls(prop_filters, test, limit)


# -- request handling -----------------------------------------------------------

PropValue = Callable[[ET.Element], None]


class CardDAVHandler:
    """
    Dispatch CardDAV requests to a backend.

    Args:
        backend: Backend exposing the address book operations
        codec: Path codec for the deployment layout
    """

    def __init__(self, backend, codec: PathCodec):
        self.backend = backend
        self.codec = codec

    def handle(self, request: DavRequest) -> DavResponse:
        method = request.method.upper()
        try:
            if request.path.rstrip('/') == WELL_KNOWN_PATH:
                return DavResponse(301, {'Location': PRINCIPAL_PATH})
            if method == 'OPTIONS':
                return self._options()
            if method == 'PROPFIND':
                return self._propfind(request)
            if method == 'REPORT':
                return self._report(request)
            if method in ('GET', 'HEAD'):
                return self._get(request, head=method == 'HEAD')
            if method in WRITE_METHODS:
                return self._write(request)
            return _text_response(405, 'Method Not Allowed', {'Allow': ALLOWED_METHODS})
        except DavError as e:
            logger.debug(f"{method} {request.path} rejected: {e}")
            return _text_response(e.status, str(e))
        except (PathParseError, NotFoundError, UpstreamNotFoundError) as e:
            logger.debug(f"{method} {request.path} not found: {e}")
            return _text_response(404, 'Not Found')
        except UnsupportedOperationError as e:
            return _text_response(403, str(e))
        except ET.ParseError as e:
            return _text_response(400, f"Malformed XML body: {e}")
        except UpstreamError as e:
            logger.error(f"Upstream failure on {method} {request.path}: {e}")
            return _text_response(502, 'Bad Gateway')

    def _options(self) -> DavResponse:
        return DavResponse(204, {'Allow': ALLOWED_METHODS, 'DAV': '1, 3, addressbook'})

    def _write(self, request: DavRequest) -> DavResponse:
        method = request.method.upper()
        if method == 'PUT':
            self.backend.put_address_object(request.path, request.body.decode('utf-8', 'replace'))
        elif method == 'DELETE':
            if self.codec.is_collection_path(request.path):
                self.backend.delete_address_book(request.path)
            self.backend.delete_address_object(request.path)
        elif method == 'MKCOL':
            self.backend.create_address_book(None)
        raise UnsupportedOperationError(f"{method} is not supported")

    def _get(self, request: DavRequest, head: bool = False) -> DavResponse:
        if not self._is_item_path(request.path):
            return _text_response(405, 'Method Not Allowed', {'Allow': 'OPTIONS, PROPFIND, REPORT'})
        obj = self.backend.get_address_object(request.path)
        data = obj.data.encode('utf-8')
        headers = {
            'Content-Type': CONTENT_TYPE,
            'ETag': obj.etag,
            'Content-Length': str(len(data)),
        }
        return DavResponse(200, headers, b'' if head else data)

    def _is_item_path(self, path: str) -> bool:
        try:
            self.codec.decode_item_path(path)
        except PathParseError:
            return False
        return True

    # -- PROPFIND ---------------------------------------------------------------

    def _propfind(self, request: DavRequest) -> DavResponse:
        requested, names_only = _parse_propfind(request.body)
        depth = request.header('depth', '1')
        if depth not in ('0', '1', 'infinity'):
            raise DavError(400, f"Invalid Depth header: {depth}")

        resources = self._resolve(request.path, depth != '0')
        root = ET.Element(dav('multistatus'))
        for path, props in resources:
            root.append(_response(path, props, requested, names_only))
        return _multistatus(root)

    def _resolve(self, path: str, with_children: bool) -> List[Tuple[str, Dict[str, PropValue]]]:
        """Return the (path, properties) pairs a PROPFIND on ``path`` reports."""
        if path in ('', '/'):
            resources = [('/', self._root_props())]
            if with_children:
                resources.append((PRINCIPAL_PATH, self._principal_props()))
            return resources

        if path in (PRINCIPAL_PATH, PRINCIPAL_PATH.rstrip('/')):
            resources = [(PRINCIPAL_PATH, self._principal_props())]
            if with_children and not self.codec.single_tenant:
                resources.append((self.codec.home, self._home_props()))
            return resources

        if self.codec.is_home_path(path) and not self.codec.single_tenant:
            resources = [(self.codec.home, self._home_props())]
            if with_children:
                for address_book in self.backend.list_address_books():
                    resources.append((address_book.path, self._address_book_props(address_book)))
            return resources

        if self.codec.is_collection_path(path):
            address_book = self.backend.get_address_book(path)
            resources = [(address_book.path, self._address_book_props(address_book))]
            if with_children:
                for obj in self.backend.list_address_objects(address_book.path):
                    resources.append((obj.path, _object_props(obj)))
            return resources

        obj = self.backend.get_address_object(path)
        return [(obj.path, _object_props(obj))]

    def _root_props(self) -> Dict[str, PropValue]:
        return {
            dav('resourcetype'): _resourcetype(dav('collection')),
            dav('current-user-principal'): _href(PRINCIPAL_PATH),
        }

    def _principal_props(self) -> Dict[str, PropValue]:
        return {
            dav('resourcetype'): _resourcetype(dav('collection'), dav('principal')),
            dav('displayname'): _text('Tiime'),
            dav('current-user-principal'): _href(PRINCIPAL_PATH),
            dav('principal-URL'): _href(PRINCIPAL_PATH),
            card('addressbook-home-set'): _href(self.backend.address_book_home_set_path()),
        }

    def _home_props(self) -> Dict[str, PropValue]:
        return {
            dav('resourcetype'): _resourcetype(dav('collection')),
            dav('current-user-principal'): _href(PRINCIPAL_PATH),
        }

    def _address_book_props(self, address_book) -> Dict[str, PropValue]:
        return {
            dav('resourcetype'): _resourcetype(dav('collection'), card('addressbook')),
            dav('displayname'): _text(address_book.name),
            dav('current-user-principal'): _href(PRINCIPAL_PATH),
            dav('current-user-privilege-set'): _privileges('read'),
            card('addressbook-description'): _text(address_book.description),
            card('max-resource-size'): _text(str(address_book.max_resource_size)),
            card('supported-address-data'): _supported_address_data,
            dav('supported-report-set'): _supported_reports,
        }

    # -- REPORT -----------------------------------------------------------------

    def _report(self, request: DavRequest) -> DavResponse:
        if not request.body:
            raise DavError(400, 'REPORT requires a body')
        root = ET.fromstring(request.body)
        requested = _requested_props(root)

        multistatus = ET.Element(dav('multistatus'))
        if root.tag == card('addressbook-query'):
            query = AddressBookQuery.from_element(root)
            for obj in self.backend.query_address_objects(request.path, query):
                multistatus.append(_response(obj.path, _object_props(obj), requested))
        elif root.tag == card('addressbook-multiget'):
            for href_el in root.findall(dav('href')):
                path = unquote(urlparse((href_el.text or '').strip()).path)
                try:
                    obj = self.backend.get_address_object(path)
                except (PathParseError, NotFoundError, UpstreamNotFoundError):
                    multistatus.append(_status_response(path, 404))
                    continue
                multistatus.append(_response(obj.path, _object_props(obj), requested))
        else:
            raise DavError(400, f"Unsupported report: {root.tag}")
        return _multistatus(multistatus)


# -- property builders -------------------------------------------------------

def _text(value: str) -> PropValue:
    def build(el: ET.Element) -> None:
        el.text = value
    return build


def _href(path: str) -> PropValue:
    def build(el: ET.Element) -> None:
        ET.SubElement(el, dav('href')).text = quote(path)
    return build


def _resourcetype(*types: str) -> PropValue:
    def build(el: ET.Element) -> None:
        for resource_type in types:
            ET.SubElement(el, resource_type)
    return build


def _privileges(*names: str) -> PropValue:
    def build(el: ET.Element) -> None:
        for name in names:
            privilege = ET.SubElement(el, dav('privilege'))
            ET.SubElement(privilege, dav(name))
    return build


def _supported_address_data(el: ET.Element) -> None:
    ET.SubElement(el, card('address-data-type'), {
        'content-type': 'text/vcard', 'version': VCARD_VERSION
    })


def _supported_reports(el: ET.Element) -> None:
    for report in ('addressbook-query', 'addressbook-multiget'):
        supported = ET.SubElement(el, dav('supported-report'))
        ET.SubElement(ET.SubElement(supported, dav('report')), card(report))


def _object_props(obj: AddressObject) -> Dict[str, PropValue]:
    data = obj.data
    return {
        dav('resourcetype'): _resourcetype(),
        dav('getetag'): _text(obj.etag),
        dav('getcontenttype'): _text(CONTENT_TYPE),
        dav('getcontentlength'): _text(str(len(data.encode('utf-8')))),
        card('address-data'): _text(data),
    }


# Not returned for allprop: only sent when a client asks for it by name
EXPLICIT_ONLY = {card('address-data'), dav('current-user-privilege-set'), dav('supported-report-set')}


# -- XML helpers --------------------------------------------------------------

def _parse_propfind(body: bytes) -> Tuple[Optional[List[str]], bool]:
    """
    Parse a PROPFIND body.

    Returns:
        (requested property tags or None for allprop, propname flag)
    """
    if not body or not body.strip():
        return None, False
    root = ET.fromstring(body)
    if root.tag != dav('propfind'):
        raise DavError(400, f"Expected propfind element, got {root.tag}")
    if root.find(dav('propname')) is not None:
        return None, True
    return _requested_props(root), False


def _requested_props(root: ET.Element) -> Optional[List[str]]:
    prop = root.find(dav('prop'))
    if prop is None:
        return None
    return [child.tag for child in prop]


def _response(path: str, props: Dict[str, PropValue], requested: Optional[List[str]],
              names_only: bool = False) -> ET.Element:
    response = ET.Element(dav('response'))
    ET.SubElement(response, dav('href')).text = quote(path)

    if requested is None:
        found = [tag for tag in props if tag not in EXPLICIT_ONLY]
        missing = []
    else:
        found = [tag for tag in requested if tag in props]
        missing = [tag for tag in requested if tag not in props]

    for status, tags in ((200, found), (404, missing)):
        if not tags:
            continue
        propstat = ET.SubElement(response, dav('propstat'))
        prop = ET.SubElement(propstat, dav('prop'))
        for tag in tags:
            el = ET.SubElement(prop, tag)
            if status == 200 and not names_only:
                props[tag](el)
        ET.SubElement(propstat, dav('status')).text = _status_line(status)
    return response


def _status_response(path: str, status: int) -> ET.Element:
    response = ET.Element(dav('response'))
    ET.SubElement(response, dav('href')).text = quote(path)
    ET.SubElement(response, dav('status')).text = _status_line(status)
    return response


def _status_line(status: int) -> str:
    return f"HTTP/1.1 {status} {STATUS_TEXT.get(status, '')}".rstrip()


def _multistatus(root: ET.Element) -> DavResponse:
    body = ET.tostring(root, encoding='utf-8', xml_declaration=True)
    return DavResponse(207, {'Content-Type': 'application/xml; charset=utf-8'}, body)


def _text_response(status: int, message: str, headers: Optional[Dict[str, Any]] = None) -> DavResponse:
    response_headers = {'Content-Type': 'text/plain; charset=utf-8'}
    if headers:
        response_headers.update(headers)
    return DavResponse(status, response_headers, message.encode('utf-8'))
