import pytest

from menusee.errors import ProviderError
from menusee.observability import ErrorCode
from menusee.providers.jsonparse import (
    close_open_brackets,
    extract_first_json_object,
    parse_model_json,
    strip_code_fences,
)
from menusee.schemas import VisionMenuResponse


def test_plain_json():
    menu = parse_model_json(
        '{"restaurantName": "Cafe Uno", "sections": [{"name": "Drinks", "items": [{"name": "Tea", "price": 3.5}]}]}',
        VisionMenuResponse,
    )
    assert menu.restaurant_name == "Cafe Uno"
    assert menu.sections[0].items[0].name == "Tea"
    assert menu.sections[0].items[0].price == "3.5"
    assert menu.items_fallback is None


def test_code_fenced_json():
    text = 'Here you go:\n```json\n{"sections": [], "itemsFallback": [{"name": "Pie"}]}\n```'
    menu = parse_model_json(text, VisionMenuResponse)
    assert menu.sections == []
    assert [i.name for i in menu.items_fallback] == ["Pie"]


def test_missing_or_null_sections_default_to_empty():
    assert parse_model_json('{"restaurantName": "X"}', VisionMenuResponse).sections == []
    assert parse_model_json('{"sections": null}', VisionMenuResponse).sections == []


def test_trailing_commas():
    text = '{"sections": [{"name": "Mains", "items": [{"name": "Steak",},]},]}'
    menu = parse_model_json(text, VisionMenuResponse)
    assert menu.sections[0].items[0].name == "Steak"


def test_python_literals():
    text = "{'restaurantName': 'Luigi', 'sections': [], 'itemsFallback': [{'name': 'Pizza', 'price': None}]}"
    menu = parse_model_json(text, VisionMenuResponse)
    assert menu.restaurant_name == "Luigi"
    assert menu.items_fallback[0].price is None


def test_truncated_output_is_closed():
    text = '{"sections": [{"name": "A", "items": [{"name": "B"}'
    menu = parse_model_json(text, VisionMenuResponse)
    assert menu.sections[0].items[0].name == "B"


def test_raw_newline_inside_string():
    text = '{"sections": [{"name": "A", "items": [{"name": "Fish", "description": "line one\nline two"}]}]}'
    menu = parse_model_json(text, VisionMenuResponse)
    assert menu.sections[0].items[0].description == "line one\nline two"


def test_unparseable_raises_provider_error():
    with pytest.raises(ProviderError) as excinfo:
        parse_model_json("Sorry, I cannot read this menu.", VisionMenuResponse)
    assert excinfo.value.code == ErrorCode.VISION_MALFORMED


def test_non_object_json_is_rejected():
    with pytest.raises(ProviderError):
        parse_model_json("[1, 2, 3]", VisionMenuResponse)


def test_helpers():
    assert strip_code_fences("```\n{}\n```") == "{}"
    assert extract_first_json_object('noise {"a": "}"} tail') == '{"a": "}"}'
    assert close_open_brackets('{"a": [1') == '{"a": [1]}'
