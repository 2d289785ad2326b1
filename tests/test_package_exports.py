"""Tests for top-level package lazy exports."""

from __future__ import annotations

import unittest

import healthassist
from healthassist.client import HealthAssistClient


class PackageExportTests(unittest.TestCase):
    """Ensure __getattr__ and exported symbols behave as expected."""

    def test_lazy_exports_resolve_known_symbols(self) -> None:
        for name in healthassist.__all__:
            with self.subTest(name=name):
                self.assertIsNotNone(getattr(healthassist, name))
        self.assertTrue(callable(healthassist.load_config))
        self.assertIs(healthassist.HealthAssistClient, HealthAssistClient)

    def test_unknown_symbol_raises_attribute_error(self) -> None:
        with self.assertRaises(AttributeError):
            getattr(healthassist, "THIS_DOES_NOT_EXIST")


if __name__ == "__main__":
    unittest.main()
