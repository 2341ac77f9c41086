#!/usr/bin/env python3
"""
Tests for tool generation: naming, operation filters, schemas and degradation.
"""

import os
import unittest
import warnings

from odata_hub_lib.errors import UnresolvedEntityTypeWarning
from odata_hub_lib.metadata_parser import MetadataParser
from odata_hub_lib.models import (
    EntityProperty,
    EntitySet,
    EntityType,
    ServiceMetadata,
    ToolGenConfig,
    ToolOperation,
)
from odata_hub_lib.tool_generator import ToolGenerator, build_tool_name, generate_tools

TEST_DATA = os.path.join(os.path.dirname(os.path.abspath(__file__)), "test_data")
SAP_SERVICE_URL = "https://sap.example.com/sap/opu/odata/sap/ZODD_000_SRV"
TRIPPIN_URL = "https://services.example.com/V4/Trippin/Trippin.svc"


def parse_fixture(name: str):
    with open(os.path.join(TEST_DATA, name), "rb") as f:
        return MetadataParser().parse(f.read())


class TestToolNaming(unittest.TestCase):
    """Tests for build_tool_name."""

    def test_default_name(self):
        self.assertEqual(build_tool_name("filter", "Products", "NW", ToolGenConfig()),
                         "filter_Products_for_NW")

    def test_without_service_id(self):
        config = ToolGenConfig(use_service_id=False)
        self.assertEqual(build_tool_name("get", "Products", "NW", config), "get_Products")

    def test_prefix(self):
        config = ToolGenConfig(tool_prefix="erp")
        self.assertEqual(build_tool_name("filter", "Products", "NW", config), "erp_filter_Products_NW")
        config = ToolGenConfig(tool_prefix="erp", use_service_id=False)
        self.assertEqual(build_tool_name("filter", "Products", "NW", config), "erp_filter_Products")

    def test_postfix(self):
        config = ToolGenConfig(tool_postfix="prod")
        self.assertEqual(build_tool_name("count", "Orders", "NW", config), "count_Orders_for_NW_prod")
        config = ToolGenConfig(tool_postfix="prod", use_service_id=False)
        self.assertEqual(build_tool_name("count", "Orders", "NW", config), "count_Orders_prod")

    def test_prefix_wins_over_postfix(self):
        config = ToolGenConfig(tool_prefix="a", tool_postfix="b")
        self.assertEqual(build_tool_name("get", "X", "S", config), "a_get_X_S")

    def test_shrink(self):
        config = ToolGenConfig(shrink_names=True)
        self.assertEqual(build_tool_name("update", "Orders", "NW", config), "upd_Orders_for_NW")
        self.assertEqual(build_tool_name("delete", "Orders", "NW", config), "del_Orders_for_NW")
        # Only update and delete have short forms
        self.assertEqual(build_tool_name("create", "Orders", "NW", config), "create_Orders_for_NW")

    def test_sanitized_and_truncated(self):
        config = ToolGenConfig(max_tool_name_length=20)
        name = build_tool_name("filter", "Sales-Order..Items", "NW", config)
        self.assertEqual(name, "filter_Sales_Order_")
        self.assertRegex(name, r'^[A-Za-z0-9_]+$')
        self.assertLessEqual(len(name), 20)

    def test_consecutive_underscores_collapsed(self):
        name = build_tool_name("get", "A__B", "S", ToolGenConfig())
        self.assertEqual(name, "get_A_B_for_S")


class TestToolGeneration(unittest.TestCase):
    """Tests against the SAP v2 fixture."""

    @classmethod
    def setUpClass(cls):
        cls.metadata = parse_fixture("northwind_v2_sap.xml")

    def generate(self, **config_fields):
        config = ToolGenConfig(**config_fields)
        return ToolGenerator().generate(self.metadata, "sys", config, service_url=SAP_SERVICE_URL)

    def tool_names(self, **config_fields):
        return [tool.name for tool in self.generate(**config_fields).tools]

    def test_all_tools(self):
        names = self.tool_names()
        self.assertEqual(names, [
            "filter_PROGRAMSet_for_Z000",
            "search_PROGRAMSet_for_Z000",
            "get_PROGRAMSet_for_Z000",
            "count_PROGRAMSet_for_Z000",
            "create_PROGRAMSet_for_Z000",
            "update_PROGRAMSet_for_Z000",
            "delete_PROGRAMSet_for_Z000",
            "filter_INCLUDESet_for_Z000",
            "get_INCLUDESet_for_Z000",
            "count_INCLUDESet_for_Z000",
            "filter_TRANSPORTSet_for_Z000",
            "search_TRANSPORTSet_for_Z000",
            "get_TRANSPORTSet_for_Z000",
            "create_TRANSPORTSet_for_Z000",
            "update_TRANSPORTSet_for_Z000",
            "delete_TRANSPORTSet_for_Z000",
            "func_ActivateProgram_for_Z000",
            "func_GetSyntaxErrors_for_Z000",
        ])

    def test_tool_targets(self):
        tools = {tool.name: tool for tool in self.generate().tools}
        get_tool = tools["get_PROGRAMSet_for_Z000"]
        self.assertEqual(get_tool.operation, ToolOperation.GET)
        self.assertEqual(get_tool.entity_set, "PROGRAMSet")
        self.assertEqual(get_tool.system_id, "sys")
        self.assertEqual(get_tool.service_url, SAP_SERVICE_URL)

        func = tools["func_ActivateProgram_for_Z000"]
        self.assertEqual(func.operation, ToolOperation.FUNCTION)
        self.assertEqual(func.function_name, "ActivateProgram")
        self.assertIsNone(func.entity_set)

    def test_read_only(self):
        names = self.tool_names(enabled_operations="R")
        self.assertTrue(names)
        for name in names:
            self.assertRegex(name, r'^(filter|search|get|count)_')

    def test_disable_functions(self):
        names = self.tool_names(enabled_operations="CRUDFSG")
        self.assertFalse([n for n in names if n.startswith("func_")])

    def test_only_get(self):
        names = self.tool_names(enabled_operations="G")
        self.assertEqual(names, ["get_PROGRAMSet_for_Z000", "get_INCLUDESet_for_Z000",
                                 "get_TRANSPORTSet_for_Z000"])

    def test_filter_schema(self):
        tools = {tool.name: tool for tool in self.generate().tools}
        schema = tools["filter_PROGRAMSet_for_Z000"].input_schema
        self.assertEqual(schema["type"], "object")
        self.assertEqual(schema["required"], [])
        self.assertEqual(set(schema["properties"]),
                         {"filter", "select", "expand", "orderby", "top", "skip", "count", "format"})
        self.assertEqual(schema["properties"]["select"]["items"]["enum"],
                         ["Program", "Title", "Package", "Active", "Version", "Size", "ChangedAt", "Broken"])
        self.assertEqual(schema["properties"]["top"]["minimum"], 1)

    def test_dollar_prefixed_options(self):
        tools = {tool.name: tool for tool in self.generate(claude_code_friendly=False).tools}
        schema = tools["filter_PROGRAMSet_for_Z000"].input_schema
        self.assertIn("$filter", schema["properties"])
        self.assertNotIn("filter", schema["properties"])
        self.assertIn("$select", tools["get_PROGRAMSet_for_Z000"].input_schema["properties"])
        self.assertIn("$filter", tools["count_PROGRAMSet_for_Z000"].input_schema["properties"])

    def test_search_schema(self):
        tools = {tool.name: tool for tool in self.generate().tools}
        schema = tools["search_PROGRAMSet_for_Z000"].input_schema
        self.assertEqual(schema["required"], ["search"])
        self.assertIn("top", schema["properties"])

    def test_get_schema(self):
        tools = {tool.name: tool for tool in self.generate().tools}
        schema = tools["get_INCLUDESet_for_Z000"].input_schema
        self.assertEqual(schema["required"], ["Program", "Include"])
        self.assertEqual(schema["properties"]["Program"]["maxLength"], 40)
        self.assertIn("select", schema["properties"])
        self.assertIn("expand", schema["properties"])

    def test_create_schema_excludes_keys(self):
        tools = {tool.name: tool for tool in self.generate().tools}
        schema = tools["create_PROGRAMSet_for_Z000"].input_schema
        self.assertNotIn("Program", schema["properties"])
        self.assertEqual(schema["required"], ["Package"])
        self.assertEqual(schema["properties"]["Active"]["default"], True)
        self.assertAlmostEqual(schema["properties"]["Size"]["multipleOf"], 0.01)

    def test_create_schema_with_keys(self):
        tools = {tool.name: tool for tool in self.generate(create_includes_keys=True).tools}
        schema = tools["create_PROGRAMSet_for_Z000"].input_schema
        self.assertIn("Program", schema["properties"])
        self.assertEqual(schema["required"], ["Program", "Package"])

    def test_update_schema(self):
        tools = {tool.name: tool for tool in self.generate().tools}
        schema = tools["update_PROGRAMSet_for_Z000"].input_schema
        self.assertEqual(schema["required"], ["Program"])
        self.assertIn("Title", schema["properties"])

    def test_function_schema(self):
        tools = {tool.name: tool for tool in self.generate().tools}
        func = tools["func_ActivateProgram_for_Z000"]
        self.assertEqual(func.input_schema["required"], ["Program"])
        self.assertEqual(func.input_schema["properties"]["Force"]["type"], "boolean")
        self.assertIn("returns ZODD_000_SRV.Program", func.description)
        self.assertIn("Activate a program", func.description)

    def test_shrink_names(self):
        names = self.tool_names(shrink_names=True)
        self.assertIn("upd_PROGRAMSet_for_Z000", names)
        self.assertIn("del_PROGRAMSet_for_Z000", names)

    def test_service_id_from_system_id(self):
        result = ToolGenerator().generate(self.metadata, "erp", ToolGenConfig())
        self.assertIn("filter_PROGRAMSet_for_erp", [t.name for t in result.tools])

    def test_names_well_formed(self):
        config = ToolGenConfig(max_tool_name_length=16)
        for tool in generate_tools(self.metadata, "sys", config, service_url=SAP_SERVICE_URL):
            self.assertRegex(tool.name, r'^[A-Za-z0-9_]+$')
            self.assertLessEqual(len(tool.name), 16)

    def test_deterministic(self):
        first = self.generate()
        second = self.generate()
        self.assertEqual([t.model_dump() for t in first.tools], [t.model_dump() for t in second.tools])

    def test_schemas_not_shared_between_tools(self):
        tools = {tool.name: tool for tool in self.generate().tools}
        search_select = tools["search_PROGRAMSet_for_Z000"].input_schema["properties"]["select"]
        search_select["items"]["enum"].append("Injected")
        search_select["description"] = "changed"

        for name in ("filter_PROGRAMSet_for_Z000", "get_PROGRAMSet_for_Z000"):
            select = tools[name].input_schema["properties"]["select"]
            self.assertNotIn("Injected", select["items"]["enum"])
            self.assertEqual(select["description"], "Select specific properties to return")


class TestNameCollisions(unittest.TestCase):

    @classmethod
    def setUpClass(cls):
        cls.metadata = parse_fixture("northwind_v2_sap.xml")

    def test_truncation_collision_gets_suffix(self):
        config = ToolGenConfig(max_tool_name_length=10, use_service_id=False)
        result = ToolGenerator().generate(self.metadata, "sys", config)
        names = [t.name for t in result.tools]
        self.assertEqual(len(names), len(set(names)))
        self.assertIn("func_Activ", names)
        for name in names:
            self.assertLessEqual(len(name), 10)

    def test_taken_names_avoided(self):
        taken = {"filter_PROGRAMSet_for_Z000"}
        result = ToolGenerator().generate(self.metadata, "sys", ToolGenConfig(),
                                          service_url=SAP_SERVICE_URL, taken_names=taken)
        names = [t.name for t in result.tools]
        self.assertIn("filter_PROGRAMSet_for_Z000_2", names)
        self.assertNotIn("filter_PROGRAMSet_for_Z000", names)
        self.assertTrue(any("already taken" in w for w in result.warnings))

    def test_colliding_truncated_names(self):
        key = EntityProperty(name="Id", type="Edm.Int32", nullable=False, is_key=True)
        item = EntityType(name="Item", properties=[key], key_properties=["Id"])
        metadata = ServiceMetadata(
            entity_types=[item],
            entity_sets=[EntitySet(name="SalesOrderItems", entity_type="Item"),
                         EntitySet(name="SalesOrderHeaders", entity_type="Item")],
        )
        config = ToolGenConfig(max_tool_name_length=16, use_service_id=False, enabled_operations="F")
        result = ToolGenerator().generate(metadata, "sys", config)
        self.assertEqual([t.name for t in result.tools], [
            "filter_SalesOrde",
            "count_SalesOrder",
            "filter_SalesOr_2",
            "count_SalesOrd_2",
        ])
        self.assertEqual([t.entity_set for t in result.tools],
                         ["SalesOrderItems", "SalesOrderItems", "SalesOrderHeaders", "SalesOrderHeaders"])
        self.assertEqual(len(result.warnings), 2)


class TestV4Generation(unittest.TestCase):

    @classmethod
    def setUpClass(cls):
        cls.metadata = parse_fixture("trippin_v4.xml")
        cls.tools = {t.name: t for t in ToolGenerator().generate(
            cls.metadata, "trip", ToolGenConfig(), service_url=TRIPPIN_URL).tools}

    def test_capabilities_respected(self):
        self.assertIn("update_Airports_for_TrippSvc", self.tools)
        self.assertNotIn("create_Airports_for_TrippSvc", self.tools)
        self.assertNotIn("delete_Airports_for_TrippSvc", self.tools)
        self.assertIn("create_People_for_TrippSvc", self.tools)

    def test_imported_operations_only(self):
        self.assertIn("func_AirportsInCity_for_TrippSvc", self.tools)
        self.assertEqual(self.tools["func_AirportsInCity_for_TrippSvc"].function_name, "AirportsInCity")
        self.assertNotIn("func_FindAirports_for_TrippSvc", self.tools)
        self.assertNotIn("func_GetDiagnostics_for_TrippSvc", self.tools)

    def test_unbound_operations_only(self):
        self.assertIn("func_GetNearestAirport_for_TrippSvc", self.tools)
        self.assertIn("action_ResetDataSource_for_TrippSvc", self.tools)
        self.assertNotIn("func_GetFavoriteAirline_for_TrippSvc", self.tools)
        self.assertNotIn("action_ShareTrip_for_TrippSvc", self.tools)
        self.assertEqual(self.tools["action_ResetDataSource_for_TrippSvc"].operation, ToolOperation.ACTION)

    def test_collection_property(self):
        schema = self.tools["create_People_for_TrippSvc"].input_schema
        self.assertEqual(schema["properties"]["Emails"]["type"], "array")
        self.assertEqual(schema["properties"]["Budget"]["description"], "Yearly travel budget")


class TestUnresolvedEntityType(unittest.TestCase):

    def test_degrades_to_query_tools(self):
        metadata = parse_fixture("unresolved_type.xml")
        with warnings.catch_warnings(record=True) as caught:
            warnings.simplefilter("always")
            result = ToolGenerator().generate(metadata, "demo", ToolGenConfig())

        self.assertTrue(any(issubclass(w.category, UnresolvedEntityTypeWarning) for w in caught))
        self.assertEqual(len(result.warnings), 1)
        self.assertIn("Ghosts", result.warnings[0])

        ghost_tools = {t.name: t for t in result.tools if t.entity_set == "Ghosts"}
        self.assertEqual(sorted(ghost_tools), ["count_Ghosts_for_demo", "filter_Ghosts_for_demo",
                                               "search_Ghosts_for_demo"])
        select = ghost_tools["filter_Ghosts_for_demo"].input_schema["properties"]["select"]
        self.assertNotIn("enum", select["items"])

        # Order declares a key property that does not exist: no key-addressed tools
        order_names = [t.name for t in result.tools if t.entity_set == "Orders"]
        self.assertIn("filter_Orders_for_demo", order_names)
        self.assertIn("create_Orders_for_demo", order_names)
        for name in ("get_Orders_for_demo", "update_Orders_for_demo", "delete_Orders_for_demo"):
            self.assertNotIn(name, order_names)


class TestCompositeKeyTools(unittest.TestCase):

    def test_bad_facet_keeps_full_key(self):
        xml = ('<edmx:Edmx Version="1.0" xmlns:edmx="http://schemas.microsoft.com/ado/2007/06/edmx">'
               '<edmx:DataServices><Schema Namespace="SHOP" '
               'xmlns="http://schemas.microsoft.com/ado/2008/09/edm">'
               '<EntityType Name="Item"><Key><PropertyRef Name="OrderId"/><PropertyRef Name="ItemNo"/></Key>'
               '<Property Name="OrderId" Type="Edm.Int32" Nullable="false"/>'
               '<Property Name="ItemNo" Type="Edm.String" Nullable="false" MaxLength="bogus"/>'
               '</EntityType>'
               '<EntityContainer Name="C"><EntitySet Name="Items" EntityType="SHOP.Item"/></EntityContainer>'
               '</Schema></edmx:DataServices></edmx:Edmx>')
        metadata = MetadataParser().parse(xml)
        tools = {t.name: t for t in ToolGenerator().generate(metadata, "shop", ToolGenConfig()).tools}
        for op in ("get", "update", "delete"):
            self.assertEqual(tools[f"{op}_Items_for_shop"].input_schema["required"], ["OrderId", "ItemNo"])
        self.assertNotIn("maxLength", tools["get_Items_for_shop"].input_schema["properties"]["ItemNo"])


if __name__ == "__main__":
    unittest.main()
