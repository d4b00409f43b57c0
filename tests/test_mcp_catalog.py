import pytest

from ado_mcp_wrapper.mcp.catalog import ToolCatalog, ToolDescriptor


def test_tool_catalog_initialization():
    """Verify an empty ToolCatalog."""
    catalog = ToolCatalog()
    assert len(catalog) == 0
    assert catalog.list_tools() == []
    assert catalog.get_tool("anything") is None


def test_from_list_result_preserves_order():
    catalog = ToolCatalog.from_list_result(
        {
            "tools": [
                {"name": "b_tool", "inputSchema": {"type": "object"}},
                {"name": "a_tool", "description": "first"},
            ]
        }
    )

    assert [t.name for t in catalog] == ["b_tool", "a_tool"]
    assert "a_tool" in catalog
    assert catalog.get_tool("a_tool").description == "first"
    assert catalog.get_tool("a_tool").input_schema == {}


@pytest.mark.parametrize("result", [None, {}, {"tools": None}])
def test_from_list_result_tolerates_empty(result):
    assert len(ToolCatalog.from_list_result(result)) == 0


def test_nameless_entries_are_skipped():
    catalog = ToolCatalog.from_list_result({"tools": [{"description": "no name"}, {"name": "ok"}]})

    assert [t.name for t in catalog] == ["ok"]


def test_to_list_keeps_backend_fields():
    raw = {
        "name": "wit_get_work_item",
        "description": "Get a work item",
        "inputSchema": {"type": "object"},
        "annotations": {"readOnlyHint": True},
    }
    catalog = ToolCatalog.from_list_result({"tools": [raw]})

    assert catalog.to_list() == [raw]


def test_descriptor_without_raw_serializes_wire_shape():
    tool = ToolDescriptor(name="ping", input_schema={"type": "object"})

    assert tool.to_dict() == {"name": "ping", "inputSchema": {"type": "object"}}
