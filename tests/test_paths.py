#!/usr/bin/env python3
"""
Unit tests for the resource path codec.
"""

import os
import sys
import unittest

# Add the project directory to the path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from tiime_carddav.paths import EntityKey, PathCodec, PathParseError, HOME_SET_PATH


class TestCollectionPaths(unittest.TestCase):
    """Test cases for address book paths in the multi-tenant layout."""

    def setUp(self):
        self.codec = PathCodec()

    def test_round_trip(self):
        """Encoding then decoding a company id gives it back."""
        for org_id in (1, 2, 42, 123456789):
            path = self.codec.encode_collection_path(org_id)
            self.assertEqual(self.codec.decode_collection_path(path), org_id)

    def test_canonical_form(self):
        self.assertEqual(self.codec.encode_collection_path(7), '/me/contacts/7/')

    def test_decode_accepts_deeper_paths(self):
        """Collection decoding is a prefix match."""
        for path in ('/me/contacts/1', '/me/contacts/1/', '/me/contacts/1/2', '/me/contacts/1/2/3'):
            self.assertEqual(self.codec.decode_collection_path(path), 1, path)

    def test_decode_rejects_non_numeric(self):
        for path in ('/me/contacts/test/', '/me/contacts/12x', '/me/contacts/-1',
                     '/me/contacts/+1', '/me/contacts/١/'):
            with self.assertRaises(PathParseError, msg=path):
                self.codec.decode_collection_path(path)

    def test_decode_rejects_missing_segment(self):
        for path in ('/me/contacts/', '/me/contacts', '/me/contacts//1'):
            with self.assertRaises(PathParseError, msg=path):
                self.codec.decode_collection_path(path)

    def test_decode_rejects_outside_home(self):
        with self.assertRaises(PathParseError):
            self.codec.decode_collection_path('/other/1/')

    def test_zero_is_a_valid_identifier(self):
        self.assertEqual(self.codec.decode_collection_path('/me/contacts/0/'), 0)

    def test_is_collection_path(self):
        self.assertTrue(self.codec.is_collection_path('/me/contacts/1/'))
        self.assertTrue(self.codec.is_collection_path('/me/contacts/1'))
        self.assertFalse(self.codec.is_collection_path('/me/contacts/'))
        self.assertFalse(self.codec.is_collection_path('/me/contacts/1/2'))
        self.assertFalse(self.codec.is_collection_path('/me/contacts/abc/'))
        self.assertFalse(self.codec.is_collection_path('/elsewhere/1/'))


class TestItemPaths(unittest.TestCase):
    """Test cases for address object paths in the multi-tenant layout."""

    def setUp(self):
        self.codec = PathCodec()

    def test_client_path(self):
        key = self.codec.decode_item_path('/me/contacts/1/2')
        self.assertEqual(key, EntityKey(1, 2, None))
        self.assertIsNone(key.contact_id)

    def test_contact_path(self):
        self.assertEqual(self.codec.decode_item_path('/me/contacts/1/2/3'), EntityKey(1, 2, 3))

    def test_round_trip(self):
        for key in (EntityKey(1, 2), EntityKey(1, 2, 3), EntityKey(99, 0), EntityKey(5, 6, 0)):
            self.assertEqual(self.codec.decode_item_path(self.codec.encode_item_path(key)), key)

    def test_zero_contact_is_not_absent(self):
        """A contact id of zero is kept distinct from no contact."""
        key = self.codec.decode_item_path('/me/contacts/1/2/0')
        self.assertEqual(key.contact_id, 0)
        self.assertEqual(self.codec.encode_item_path(key), '/me/contacts/1/2/0')

    def test_rejected_paths(self):
        for path in ('/me/contacts/1', '/me/contacts', '/1', '/me/contacts/1/2/3/4',
                     '/me/contacts/1/x', '/me/contacts/1/2/y', '/me/contacts/1/2/'):
            with self.assertRaises(PathParseError, msg=path):
                self.codec.decode_item_path(path)

    def test_encode(self):
        self.assertEqual(self.codec.encode_item_path(EntityKey(1, 2)), '/me/contacts/1/2')
        self.assertEqual(self.codec.encode_item_path(EntityKey(1, 2, 3)), '/me/contacts/1/2/3')


class TestSingleTenantCodec(unittest.TestCase):
    """Test cases for the layout with a company fixed by configuration."""

    def setUp(self):
        self.codec = PathCodec(org_id=77)

    def test_home_is_the_address_book(self):
        self.assertTrue(self.codec.single_tenant)
        self.assertEqual(self.codec.encode_collection_path(77), HOME_SET_PATH)
        self.assertEqual(self.codec.decode_collection_path('/me/contacts/'), 77)
        self.assertTrue(self.codec.is_collection_path('/me/contacts'))

    def test_item_paths_omit_company(self):
        self.assertEqual(self.codec.encode_item_path(EntityKey(77, 5)), '/me/contacts/5')
        self.assertEqual(self.codec.decode_item_path('/me/contacts/5'), EntityKey(77, 5))
        self.assertEqual(self.codec.decode_item_path('/me/contacts/5/6'), EntityKey(77, 5, 6))

    def test_rejected_paths(self):
        for path in ('/me/contacts/', '/me/contacts/a', '/me/contacts/1/2/3'):
            with self.assertRaises(PathParseError, msg=path):
                self.codec.decode_item_path(path)

    def test_invalid_construction(self):
        with self.assertRaises(ValueError):
            PathCodec(home='/me/contacts')
        with self.assertRaises(ValueError):
            PathCodec(org_id=-1)


if __name__ == '__main__':
    unittest.main()
