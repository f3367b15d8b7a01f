"""Tests for dependency extraction from object definitions."""
import pytest

from sql_scanner.builder import build_graph
from sql_scanner.catalog import ObjectCatalog
from sql_scanner.config import AnalysisConfig
from sql_scanner.diagnostics import DiagnosticCode, Diagnostics, Severity
from sql_scanner.engine import TraversalEngine
from sql_scanner.graph import DependencyGraph
from sql_scanner.keys import KeyResolver, format_key
from sql_scanner.models import EdgeKind, ObjectType, SqlObject
from sql_scanner.parser import SqlParser


def key(name, schema="dbo", catalog="Cat"):
    return format_key(catalog, schema, name)


def codes(graph):
    return [diagnostic.code for diagnostic in graph.diagnostics]


def test_procedure_call(procedure):
    """EXEC of a known procedure gives a call edge."""
    graph = build_graph([
        procedure("CallerProc", "EXEC CalleeProc;"),
        procedure("CalleeProc", "SELECT 1"),
    ])
    assert key("CalleeProc") in graph.out_nodes(key("CallerProc"))
    assert key("CallerProc") in graph.in_nodes(key("CalleeProc"))
    assert graph.edge_kinds(key("CallerProc"), key("CalleeProc")) == {EdgeKind.CALL}


def test_table_read(procedure, table):
    graph = build_graph([procedure("MyProcedure", "SELECT * FROM MyTable;"), table("MyTable")])
    assert key("MyProcedure") in graph.out_nodes(key("MyTable"))
    assert key("MyTable") in graph.in_nodes(key("MyProcedure"))
    assert graph.edge_kinds(key("MyTable"), key("MyProcedure")) == {EdgeKind.DATA_FLOW}


def test_insert_writes_without_reading(procedure, table):
    graph = build_graph([
        procedure("MyProcedure", "INSERT INTO MyTable (Col1, Col2) VALUES (1, 'a');"),
        table("MyTable"),
    ])
    assert key("MyTable") in graph.out_nodes(key("MyProcedure"))
    assert key("MyProcedure") in graph.in_nodes(key("MyTable"))
    assert key("MyProcedure") not in graph.out_nodes(key("MyTable"))
    assert graph.edge_kinds(key("MyProcedure"), key("MyTable")) == {EdgeKind.WRITE}


def test_update_through_alias(procedure, table):
    """The aliased write target is not recorded as a read; the joined source is."""
    graph = build_graph([
        procedure("TestProc", "UPDATE t SET t.Col1 = s.Col1 FROM TargetTable t "
                              "JOIN SourceTable s ON t.ID = s.ID;"),
        table("TargetTable"),
        table("SourceTable"),
    ])
    assert graph.edge_kinds(key("TestProc"), key("TargetTable")) == {EdgeKind.WRITE}
    assert graph.edge_kinds(key("SourceTable"), key("TestProc")) == {EdgeKind.DATA_FLOW}
    assert key("TestProc") not in graph.out_nodes(key("TargetTable"))


def test_cross_catalog_reference(procedure, table):
    graph = build_graph([
        procedure("TestProc", "SELECT * FROM [CFLIVE].[dbo].[oas_grplist]",
                  schema="B2B2", catalog="Nova"),
        table("oas_grplist", catalog="CFLIVE"),
    ])
    source = key("oas_grplist", catalog="CFLIVE")
    consumer = key("TestProc", schema="B2B2", catalog="Nova")
    assert graph.edge_kinds(source, consumer) == {EdgeKind.DATA_FLOW}
    assert graph.node(source).catalog == "CFLIVE"
    assert graph.node(consumer).catalog == "Nova"


def test_unparseable_definition(procedure, table):
    """The object keeps its node; the run goes on."""
    graph = build_graph([
        procedure("Broken", "THIS IS NOT SQL FROM MyTable"),
        procedure("Good", "SELECT * FROM MyTable"),
        table("MyTable"),
    ])
    broken = graph.node(key("Broken"))
    assert broken is not None
    assert broken.in_nodes == set() and broken.out_nodes == set()
    assert key("Good") in graph.out_nodes(key("MyTable"))

    errors = graph.diagnostics.by_code(DiagnosticCode.PARSE_ERROR)
    assert len(errors) == 1
    assert errors[0].object_key == key("Broken")
    assert errors[0].severity == Severity.ERROR


def test_insert_select_from_same_table(procedure, table):
    graph = build_graph([
        procedure("CopyOrders", "INSERT INTO Orders (Id) SELECT Id + 1 FROM Orders"),
        table("Orders"),
    ])
    assert graph.edge_kinds(key("CopyOrders"), key("Orders")) == {EdgeKind.WRITE}
    assert graph.in_nodes(key("CopyOrders")) == set()


def test_insert_select_from_other_table(procedure, table):
    graph = build_graph([
        procedure("ArchiveOrders", "INSERT INTO OrderArchive SELECT * FROM Orders WHERE Closed = 1"),
        table("Orders"),
        table("OrderArchive"),
    ])
    assert graph.out_nodes(key("ArchiveOrders")) == {key("OrderArchive")}
    assert graph.in_nodes(key("ArchiveOrders")) == {key("Orders")}


def test_delete_and_merge(procedure, table):
    graph = build_graph([
        procedure("SyncInventory",
                  "DELETE FROM Staging WHERE Qty < 0;\n"
                  "MERGE INTO Inventory AS t USING Staging AS s ON t.Id = s.Id "
                  "WHEN MATCHED THEN UPDATE SET t.Qty = s.Qty "
                  "WHEN NOT MATCHED THEN INSERT (Id, Qty) VALUES (s.Id, s.Qty);"),
        table("Inventory"),
        table("Staging"),
    ])
    sync = key("SyncInventory")
    assert graph.edge_kinds(sync, key("Inventory")) == {EdgeKind.WRITE}
    assert graph.edge_kinds(sync, key("Staging")) == {EdgeKind.WRITE}
    assert graph.edge_kinds(key("Staging"), sync) == {EdgeKind.DATA_FLOW}
    assert key("Inventory") not in graph.in_nodes(sync)


def test_functions(procedure, function, table):
    graph = build_graph([
        procedure("Report", "SELECT dbo.fn_total(o.Id) FROM dbo.fn_orders(1) o"),
        function("fn_total", "RETURN 1"),
        function("fn_orders", "SELECT * FROM Orders"),
        table("Orders"),
    ])
    assert graph.edge_kinds(key("fn_total"), key("Report")) == {EdgeKind.DATA_FLOW}
    assert graph.edge_kinds(key("fn_orders"), key("Report")) == {EdgeKind.DATA_FLOW}
    assert graph.edge_kinds(key("Orders"), key("fn_orders")) == {EdgeKind.DATA_FLOW}


def test_builtin_functions_are_ignored(procedure, table):
    graph = build_graph([
        procedure("CountOrders", "SELECT COUNT(*), ISNULL(MAX(Id), 0) FROM Orders"),
        table("Orders"),
    ])
    assert graph.in_nodes(key("CountOrders")) == {key("Orders")}
    assert graph.diagnostics.by_code(DiagnosticCode.UNRESOLVED_REFERENCE) == []


def test_write_to_function_is_diagnosed(procedure, function):
    graph = build_graph([
        procedure("Bad", "INSERT INTO fn_list (Id) VALUES (1)"),
        function("fn_list", "SELECT 1"),
    ])
    assert graph.out_nodes(key("Bad")) == set()
    assert DiagnosticCode.UNSUPPORTED_WRITE_TARGET in codes(graph)


def test_unresolved_reference(procedure):
    graph = build_graph([procedure("Report", "SELECT * FROM Missing; EXEC NoSuchProc")])
    assert len(graph) == 1
    unresolved = graph.diagnostics.by_code(DiagnosticCode.UNRESOLVED_REFERENCE)
    assert len(unresolved) == 2
    assert all(d.object_key == key("Report") for d in unresolved)


def test_temp_tables_and_variables_are_local(procedure):
    graph = build_graph([procedure(
        "Work",
        "DECLARE @t TABLE (Id INT); INSERT INTO @t VALUES (1);\n"
        "SELECT * INTO #work FROM @t; UPDATE #work SET Id = 2; SELECT * FROM #work")])
    assert len(graph.diagnostics) == 0
    assert graph.graph.number_of_edges() == 0


def test_cte_shadows_table(procedure, table):
    """A CTE name is not a reference to the table of the same name."""
    graph = build_graph([
        procedure("Report", "WITH recent AS (SELECT * FROM Orders) SELECT * FROM recent"),
        table("Orders"),
        table("recent"),
    ])
    assert graph.in_nodes(key("Report")) == {key("Orders")}


def test_recursive_call_is_not_a_self_loop(procedure):
    graph = build_graph([procedure("Walk", "IF @n > 0 EXEC Walk @n = 1")])
    assert graph.graph.number_of_edges() == 0


def test_exec_variable_is_diagnosed(procedure):
    graph = build_graph([procedure("Dispatch", "EXEC @proc_name")])
    assert graph.graph.number_of_edges() == 0
    assert DiagnosticCode.UNRESOLVED_REFERENCE in codes(graph)


def test_return_status_call(procedure):
    graph = build_graph([
        procedure("Caller", "DECLARE @rc INT; EXEC @rc = dbo.Callee"),
        procedure("Callee", "RETURN 0"),
    ])
    assert graph.edge_kinds(key("Caller"), key("Callee")) == {EdgeKind.CALL}


def test_dynamic_sql_literal(procedure, table):
    """Literal dynamic SQL is analyzed as part of the current object."""
    graph = build_graph([
        procedure("Dyn", "EXEC('SELECT * FROM Orders'); EXECUTE (N'EXEC LoadOrders')"),
        procedure("LoadOrders", "SELECT 1"),
        table("Orders"),
    ])
    assert graph.edge_kinds(key("Orders"), key("Dyn")) == {EdgeKind.DATA_FLOW}
    assert graph.edge_kinds(key("Dyn"), key("LoadOrders")) == {EdgeKind.CALL}


def test_dynamic_sql_concatenation(procedure, table):
    graph = build_graph([
        procedure("Dyn", "EXEC('INSERT INTO Orders (Id) ' + 'SELECT Id FROM Customers')"),
        table("Orders"),
        table("Customers"),
    ])
    assert graph.edge_kinds(key("Dyn"), key("Orders")) == {EdgeKind.WRITE}
    assert graph.edge_kinds(key("Customers"), key("Dyn")) == {EdgeKind.DATA_FLOW}


def test_sp_executesql(procedure, table):
    graph = build_graph([
        procedure("Dyn", "EXEC sp_executesql N'SELECT * FROM Orders WHERE Id = @id', "
                         "N'@id INT', @id = 1;\n"
                         "EXEC sys.sp_executesql @stmt = N'SELECT * FROM Customers'"),
        table("Orders"),
        table("Customers"),
    ])
    assert graph.in_nodes(key("Dyn")) == {key("Orders"), key("Customers")}


def test_dynamic_sql_from_variable_is_skipped(procedure):
    graph = build_graph([procedure("Dyn", "EXEC(@sql); EXEC sp_executesql @sql")])
    assert len(graph.diagnostics.by_code(DiagnosticCode.DYNAMIC_SQL_SKIPPED)) == 2
    assert graph.graph.number_of_edges() == 0


def test_dynamic_sql_that_does_not_parse(procedure, table):
    graph = build_graph([
        procedure("Dyn", "EXEC('THIS IS NOT SQL'); SELECT * FROM Orders"),
        table("Orders"),
    ])
    assert DiagnosticCode.DYNAMIC_SQL_SKIPPED in codes(graph)
    assert DiagnosticCode.PARSE_ERROR not in codes(graph)
    assert graph.in_nodes(key("Dyn")) == {key("Orders")}


def test_nested_dynamic_sql(procedure, table):
    definition = "EXEC('EXEC(''SELECT * FROM Orders'')')"
    objects = [procedure("Dyn", definition), table("Orders")]

    graph = build_graph(objects)
    assert graph.in_nodes(key("Dyn")) == {key("Orders")}

    limited = build_graph(objects, AnalysisConfig(max_dynamic_sql_depth=1))
    assert limited.in_nodes(key("Dyn")) == set()
    assert DiagnosticCode.RECURSION_LIMIT in codes(limited)


def test_tables_are_not_parsed(table):
    graph = build_graph([table("Orders")])
    assert len(graph) == 1
    assert len(graph.diagnostics) == 0


def test_engine_with_injected_parser(procedure, table):
    """Any callable returning (tree, errors) can stand in for the parser."""
    calls = []

    def parse(text):
        calls.append(text)
        return SqlParser().parse(text)

    objects = [procedure("Report", "SELECT * FROM Orders"), table("Orders")]
    resolver = KeyResolver()
    diagnostics = Diagnostics()
    catalog = ObjectCatalog(objects, resolver, diagnostics)
    graph = DependencyGraph(diagnostics)
    engine = TraversalEngine(catalog, graph, resolver, parse, diagnostics)

    for obj in catalog:
        engine.analyze(obj)

    assert calls == ["SELECT * FROM Orders"]
    assert graph.edge_kinds(key("Orders"), key("Report")) == {EdgeKind.DATA_FLOW}


def test_set_current_node_creates_node(procedure):
    obj = procedure("Report", "SELECT 1")
    catalog = ObjectCatalog([], KeyResolver())
    graph = DependencyGraph()
    engine = TraversalEngine(catalog, graph)

    context = engine.set_current_node(obj)
    assert context.current_key == key("Report")
    assert (context.catalog, context.schema, context.depth) == ("Cat", "dbo", 0)
    assert graph.kind_of(key("Report")) == ObjectType.PROCEDURE


def test_parser_recursion_error_is_a_parse_error(procedure):
    def parse(text):
        raise RecursionError

    objects = [procedure("Deep", "SELECT 1")]
    catalog = ObjectCatalog(objects, KeyResolver())
    graph = DependencyGraph()
    TraversalEngine(catalog, graph, parser=parse).analyze(objects[0])
    assert graph.diagnostics.by_code(DiagnosticCode.PARSE_ERROR)


@pytest.mark.parametrize("definition, expected", [
    ("SELECT * FROM Orders o WITH (NOLOCK) JOIN Customers c ON o.CustomerId = c.Id",
     {"[cat].[dbo].[orders]", "[cat].[dbo].[customers]"}),
    ("SELECT * FROM Archive..Orders", {"[archive].[dbo].[orders]"}),
    ("SELECT * FROM [Cat].[dbo].[Orders]", {"[cat].[dbo].[orders]"}),
    ("SELECT * FROM ORDERS", {"[cat].[dbo].[orders]"}),
])
def test_reference_forms(procedure, table, definition, expected):
    graph = build_graph([
        procedure("Report", definition),
        table("Orders"),
        table("Orders", catalog="Archive"),
        table("Customers"),
    ])
    assert graph.in_nodes(key("Report")) == expected
    assert not graph.out_nodes(key("Report"))


def test_update_unaliased_target_joined_to_source(procedure, table):
    """The target named again in FROM is still only written."""
    graph = build_graph([
        procedure("FixTotals", "UPDATE Orders SET Total = 0 FROM Orders "
                               "JOIN Customers c ON Orders.CustomerId = c.Id;"),
        table("Orders"),
        table("Customers"),
    ])
    assert graph.edge_kinds(key("FixTotals"), key("Orders")) == {EdgeKind.WRITE}
    assert key("FixTotals") not in graph.out_nodes(key("Orders"))
    assert graph.edge_kinds(key("Customers"), key("FixTotals")) == {EdgeKind.DATA_FLOW}


def test_output_into_writes_target(procedure, table):
    graph = build_graph([
        procedure("ArchiveOrder", "DELETE FROM Orders OUTPUT deleted.Id INTO OrderArchive WHERE Id = 1"),
        table("Orders"),
        table("OrderArchive"),
    ])
    proc = key("ArchiveOrder")
    assert graph.edge_kinds(proc, key("Orders")) == {EdgeKind.WRITE}
    assert graph.edge_kinds(proc, key("OrderArchive")) == {EdgeKind.WRITE}
    assert not graph.in_nodes(proc)


def test_objects_with_default_parts():
    """Objects without schema or catalog use the configured defaults."""
    graph = build_graph([
        SqlObject(name="Report", kind=ObjectType.PROCEDURE, definition="SELECT * FROM Orders"),
        SqlObject(name="Orders", kind=ObjectType.TABLE),
    ])
    assert graph.in_nodes("[unknown].[dbo].[report]") == {"[unknown].[dbo].[orders]"}
