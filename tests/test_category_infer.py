"""
Category / serving-size inference.

Covers:
  - keyword hits in name vs description (confidence 80 / 60)
  - first category in table order wins
  - no match -> "Other"
  - serving size: explicit size words, pizza sizes, category defaults
  - item-name cleanup (leading numbering, dot leaders, whitespace)
"""

import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from menu_infer.category_infer import (
    categorize_item,
    clean_item_name,
    estimate_serving_size,
    guess_category,
)


class TestCategory:
    @pytest.mark.parametrize("name,expected", [
        ("Buffalo Wings", "Appetizers"),
        ("Caesar Salad", "Salads"),
        ("Clam Chowder", "Soups"),
        ("Grilled Salmon Fillet", "Mains"),
        ("Sweet Potato Fries", "Sides"),
        ("Chocolate Lava Cake", "Desserts"),
        ("Iced Coffee", "Beverages"),
        ("Pulled Pork Platter", "Mains"),
        ("Margherita Pizza", "Mains"),
        ("Beef Brisket", "Mains"),
        ("Oatmeal Cookie", "Desserts"),
        ("House Cocktail", "Beverages"),
        ("Mystery Box", "Other"),
    ])
    def test_name_keywords(self, name, expected):
        assert categorize_item(name) == expected

    def test_name_hit_confidence(self):
        g = guess_category("Garden Salad")
        assert g.category == "Salads"
        assert g.confidence == 80

    def test_description_hit_confidence(self):
        g = guess_category("House Special", "served with rice")
        assert g.category == "Sides"
        assert g.confidence == 60
        assert "description" in g.reason

    def test_no_match(self):
        g = guess_category("Mystery Box")
        assert g.category == "Other"
        assert g.confidence == 0

    def test_table_order(self):
        # "bread" (Appetizers) is checked before "soup" (Soups).
        assert categorize_item("Soup in a Bread Bowl") == "Appetizers"
        # "steak" (Mains) is checked before "tea" (Beverages).
        assert categorize_item("Steak Frites") == "Mains"


class TestServingSize:
    def test_family(self):
        assert estimate_serving_size("Family Lasagna") == 4

    def test_platter(self):
        assert estimate_serving_size("Seafood Platter") == 6

    def test_personal(self):
        assert estimate_serving_size("Personal Pan Pizza") == 1

    def test_pizza_sizes(self):
        assert estimate_serving_size("Medium Pizza") == 3
        assert estimate_serving_size("Small Pizza") == 2

    def test_category_defaults(self):
        assert estimate_serving_size("Loaded Nachos") == 2
        assert estimate_serving_size("Side of Rice") == 2
        assert estimate_serving_size("Ribeye Steak") == 1


class TestCleanName:
    def test_leading_number(self):
        assert clean_item_name("12. Pad Thai") == "Pad Thai"

    def test_trailing_dots(self):
        assert clean_item_name("Caesar Salad .....") == "Caesar Salad"

    def test_whitespace(self):
        assert clean_item_name("  Club   Sandwich ") == "Club Sandwich"
