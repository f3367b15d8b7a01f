"""Tests for the object catalog."""
import pytest

from sql_scanner.catalog import ObjectCatalog
from sql_scanner.diagnostics import DiagnosticCode, Diagnostics
from sql_scanner.keys import KeyResolver
from sql_scanner.models import ObjectType


def test_lookup_by_key(table, procedure):
    orders = table("Orders")
    loader = procedure("LoadOrders", "SELECT * FROM Orders")
    catalog = ObjectCatalog([orders, loader], KeyResolver())

    assert len(catalog) == 2
    assert "[cat].[dbo].[orders]" in catalog
    assert catalog.get("[cat].[dbo].[loadorders]") is loader
    assert catalog.kind_of("[cat].[dbo].[orders]") == ObjectType.TABLE
    assert catalog.get("[cat].[dbo].[missing]") is None
    assert catalog.kind_of("[cat].[dbo].[missing]") is None


def test_keeps_input_order(table):
    objects = [table("B"), table("A"), table("C")]
    catalog = ObjectCatalog(objects, KeyResolver())
    assert [obj.name for obj in catalog] == ["B", "A", "C"]


def test_duplicate_keeps_first(procedure):
    """Same key twice: the first definition wins and a diagnostic is reported."""
    first = procedure("LoadOrders", "SELECT 1")
    second = procedure("LOADORDERS", "SELECT 2")
    diagnostics = Diagnostics()
    catalog = ObjectCatalog([first, second], KeyResolver(), diagnostics)

    assert len(catalog) == 1
    assert catalog.get("[cat].[dbo].[loadorders]") is first
    duplicates = diagnostics.by_code(DiagnosticCode.DUPLICATE_OBJECT)
    assert len(duplicates) == 1
    assert duplicates[0].object_key == "[cat].[dbo].[loadorders]"


def test_rejects_none():
    with pytest.raises(ValueError):
        ObjectCatalog(None, KeyResolver())


def test_rejects_none_member(table):
    with pytest.raises(ValueError):
        ObjectCatalog([table("Orders"), None], KeyResolver())
