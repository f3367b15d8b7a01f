"""Tests for the web API."""
import pytest

from sql_scanner.web.app import app

OBJECTS = [
    {"name": "Orders", "type": "table", "catalog": "Cat"},
    {"name": "Customers", "type": "table", "catalog": "Cat"},
    {"name": "LoadOrders", "type": "procedure", "catalog": "Cat",
     "definition": "INSERT INTO Orders SELECT * FROM Customers"},
    {"name": "Report", "type": "procedure", "catalog": "Cat",
     "definition": "EXEC LoadOrders; SELECT * FROM Missing"},
]


@pytest.fixture
def client():
    """Create Flask test client."""
    app.config['TESTING'] = True
    with app.test_client() as client:
        yield client


def test_index(client):
    response = client.get('/')
    assert response.status_code == 200
    assert response.get_json() == {"success": True, "service": "sql-scanner"}


def test_graph(client):
    response = client.post('/graph', json={"objects": OBJECTS})
    assert response.status_code == 200
    data = response.get_json()
    assert data["success"] is True
    assert set(data["graph"]) == {
        "[cat].[dbo].[orders]", "[cat].[dbo].[customers]",
        "[cat].[dbo].[loadorders]", "[cat].[dbo].[report]",
    }
    loader = data["graph"]["[cat].[dbo].[loadorders]"]
    assert loader["type"] == "procedure"
    assert loader["inNodes"] == ["[cat].[dbo].[customers]", "[cat].[dbo].[report]"]
    assert loader["outNodes"] == ["[cat].[dbo].[orders]"]
    assert [d["code"] for d in data["diagnostics"]] == ["unresolved_reference"]


@pytest.mark.parametrize("payload", [None, [], {"items": []}, {"objects": [{"type": "table"}]}])
def test_graph_rejects_bad_payload(client, payload):
    response = client.post('/graph', json=payload)
    assert response.status_code == 400
    assert response.get_json()["success"] is False


def test_graph_rejects_non_json(client):
    response = client.post('/graph', data="objects", content_type="text/plain")
    assert response.status_code == 400


def test_subgraph(client):
    response = client.post('/graph/subgraph', json={
        "objects": OBJECTS, "key": "[cat].[dbo].[report]", "depth": 1})
    assert response.status_code == 200
    graph = response.get_json()["graph"]
    assert set(graph) == {"[cat].[dbo].[report]", "[cat].[dbo].[loadorders]"}


def test_subgraph_default_depth(client):
    response = client.post('/graph/subgraph', json={"objects": OBJECTS, "key": "[cat].[dbo].[orders]"})
    assert set(response.get_json()["graph"]) == {"[cat].[dbo].[orders]", "[cat].[dbo].[loadorders]"}


def test_subgraph_key_ignores_case(client):
    response = client.post('/graph/subgraph', json={"objects": OBJECTS, "key": "[Cat].[dbo].[Orders]"})
    assert response.status_code == 200
    assert set(response.get_json()["graph"]) == {"[cat].[dbo].[orders]", "[cat].[dbo].[loadorders]"}


def test_subgraph_unknown_key(client):
    response = client.post('/graph/subgraph', json={"objects": OBJECTS, "key": "[cat].[dbo].[nope]"})
    assert response.status_code == 404
    assert response.get_json()["success"] is False


@pytest.mark.parametrize("extra", [{}, {"key": ""}, {"key": "[cat].[dbo].[report]", "depth": -1},
                                   {"key": "[cat].[dbo].[report]", "depth": "2"}])
def test_subgraph_rejects_bad_arguments(client, extra):
    response = client.post('/graph/subgraph', json=dict({"objects": OBJECTS}, **extra))
    assert response.status_code == 400
