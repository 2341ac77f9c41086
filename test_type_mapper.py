#!/usr/bin/env python3
"""
Tests for the Edm to JSON-Schema type mapping.
"""

import unittest

from odata_hub_lib.models import EntityProperty, FunctionParameter
from odata_hub_lib.type_mapper import map_type


class TestTypeMapper(unittest.TestCase):

    def test_primitive_table(self):
        expected = {
            "Edm.String": "string",
            "Edm.Int16": "integer",
            "Edm.Int32": "integer",
            "Edm.Int64": "integer",
            "Edm.Byte": "integer",
            "Edm.SByte": "integer",
            "Edm.Single": "number",
            "Edm.Double": "number",
            "Edm.Decimal": "number",
            "Edm.Boolean": "boolean",
            "Edm.DateTime": "string",
            "Edm.DateTimeOffset": "string",
            "Edm.Time": "string",
            "Edm.Guid": "string",
            "Edm.Binary": "string",
        }
        for edm_type, json_type in expected.items():
            with self.subTest(edm_type=edm_type):
                self.assertEqual(map_type(edm_type), {"type": json_type})

    def test_unknown_types_fall_back_to_string(self):
        for edm_type in ("Edm.GeographyPoint", "Custom.Scalar", "", None):
            with self.subTest(edm_type=edm_type):
                self.assertEqual(map_type(edm_type), {"type": "string"})

    def test_string_max_length(self):
        prop = EntityProperty(name="Name", type="Edm.String", max_length=40)
        self.assertEqual(map_type(prop.type, prop),
                         {"type": "string", "maxLength": 40, "description": "Name property"})

    def test_max_length_only_for_strings(self):
        prop = EntityProperty(name="Data", type="Edm.Binary", max_length=10)
        self.assertNotIn("maxLength", map_type(prop.type, prop))

    def test_decimal_scale(self):
        prop = EntityProperty(name="Price", type="Edm.Decimal", precision=13, scale=2)
        schema = map_type(prop.type, prop)
        self.assertEqual(schema["type"], "number")
        self.assertAlmostEqual(schema["multipleOf"], 0.01)

    def test_zero_scale(self):
        prop = EntityProperty(name="Amount", type="Edm.Decimal", scale=0)
        self.assertEqual(map_type(prop.type, prop)["multipleOf"], 1)

    def test_default_and_description(self):
        prop = EntityProperty(name="Active", type="Edm.Boolean", default_value=True,
                              description="Is active")
        self.assertEqual(map_type(prop.type, prop),
                         {"type": "boolean", "default": True, "description": "Is active"})

    def test_function_parameter(self):
        param = FunctionParameter(name="Program", type="Edm.String", max_length=30)
        schema = map_type(param.type, param)
        self.assertEqual(schema["maxLength"], 30)
        self.assertNotIn("default", schema)

    def test_collection(self):
        self.assertEqual(map_type("Collection(Edm.String)"),
                         {"type": "array", "items": {"type": "string"}})
        self.assertEqual(map_type("Collection(Edm.Int32)")["items"], {"type": "integer"})


if __name__ == "__main__":
    unittest.main()
