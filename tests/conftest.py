"""Shared fixtures."""
import matplotlib

matplotlib.use("Agg")

import pytest  # noqa: E402

from sql_scanner.models import ObjectType, SqlObject  # noqa: E402
from sql_scanner.parser import SqlParser  # noqa: E402


@pytest.fixture
def parser():
    """Create parser instance."""
    return SqlParser()


@pytest.fixture
def make_object():
    """Factory for objects in catalog 'Cat', schema 'dbo' unless told otherwise."""
    def factory(name, kind=ObjectType.PROCEDURE, definition="", schema="dbo", catalog="Cat"):
        return SqlObject(name=name, kind=kind, definition=definition, schema=schema, catalog=catalog)
    return factory


@pytest.fixture
def table(make_object):
    """Factory for table objects."""
    def factory(name, schema="dbo", catalog="Cat"):
        return make_object(name, ObjectType.TABLE, "", schema, catalog)
    return factory


@pytest.fixture
def procedure(make_object):
    """Factory for procedure objects."""
    def factory(name, definition, schema="dbo", catalog="Cat"):
        return make_object(name, ObjectType.PROCEDURE, definition, schema, catalog)
    return factory


@pytest.fixture
def function(make_object):
    """Factory for function objects."""
    def factory(name, definition, schema="dbo", catalog="Cat"):
        return make_object(name, ObjectType.FUNCTION, definition, schema, catalog)
    return factory
