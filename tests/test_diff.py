#!/usr/bin/env python3
"""
Unit tests for attribute comparison.

The comparison only looks at attributes returned by the directory. Stored
attributes missing from the directory are ignored on purpose, so removing
an attribute in LDAP never counts as a change.
"""

import unittest
import sys
import os

# Add parent directory to path to import ldap_db_sync modules
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from ldap_db_sync.diff import user_changed, changed_attributes


class TestUserChanged(unittest.TestCase):
    """Test cases for user_changed."""

    def test_different_value_is_change(self):
        self.assertTrue(user_changed({'email': 'a@x'}, {'email': 'b@x'}))

    def test_equal_values_are_unchanged(self):
        stored = {'social_uid': 'u1', 'email': 'a@x', 'name': 'Alice'}
        self.assertFalse(user_changed(stored, dict(stored)))

    def test_missing_in_stored_is_change(self):
        self.assertTrue(user_changed({'social_uid': 'u1'}, {'social_uid': 'u1', 'email': 'a@x'}))

    def test_missing_in_stored_with_empty_fetched_value_is_change(self):
        # absent and empty string are different
        self.assertTrue(user_changed({}, {'email': ''}))

    def test_empty_fetched_is_unchanged(self):
        self.assertFalse(user_changed({'email': 'a@x'}, {}))
        self.assertFalse(user_changed({}, {}))

    def test_attribute_removed_in_directory_is_not_a_change(self):
        stored = {'social_uid': 'u1', 'email': 'a@x', 'name': 'Alice'}
        fetched = {'social_uid': 'u1', 'email': 'a@x'}
        self.assertFalse(user_changed(stored, fetched))

    def test_comparison_is_exact(self):
        self.assertTrue(user_changed({'email': 'A@x'}, {'email': 'a@x'}))
        self.assertTrue(user_changed({'name': 'Alice'}, {'name': 'Alice '}))
        self.assertTrue(user_changed({'name': ''}, {'name': ' '}))

    def test_inputs_are_not_modified(self):
        stored = {'email': 'a@x'}
        fetched = {'email': 'b@x', 'name': 'B'}
        user_changed(stored, fetched)
        self.assertEqual(stored, {'email': 'a@x'})
        self.assertEqual(fetched, {'email': 'b@x', 'name': 'B'})


class TestChangedAttributes(unittest.TestCase):
    """Test cases for changed_attributes."""

    def test_reports_old_and_new_values(self):
        stored = {'social_uid': 'u1', 'email': 'a@x', 'name': 'Alice'}
        fetched = {'social_uid': 'u1', 'email': 'b@x', 'name': 'Alice', 'phone': '123'}

        changes = sorted(changed_attributes(stored, fetched))

        self.assertEqual(changes, [('email', 'a@x', 'b@x'), ('phone', None, '123')])

    def test_no_changes(self):
        self.assertEqual(list(changed_attributes({'a': '1'}, {'a': '1'})), [])

    def test_stored_only_attributes_never_reported(self):
        self.assertEqual(list(changed_attributes({'a': '1', 'b': '2'}, {'a': '1'})), [])


if __name__ == '__main__':
    unittest.main()
