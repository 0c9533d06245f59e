import json

import pytest

from aggregator.pipeline.taxonomy import flatten_leaves, load_taxonomy, to_key
from aggregator.utils.retry import ConfigurationError


@pytest.mark.parametrize("label,key", [
    ("Home & Living", "home-and-living"),
    ("Women's Wear", "women-s-wear"),
    ("  LED  String Lights ", "led-string-lights"),
])
def test_to_key(label, key):
    assert to_key(label) == key


def test_default_taxonomy_flattens():
    leaves = flatten_leaves(load_taxonomy())
    keys = [leaf.key for leaf in leaves]

    assert len(leaves) == 18
    assert len(keys) == len(set(keys))
    assert keys[0] == "led-string-lights"


def test_repeated_leaf_keeps_first_occurrence():
    leaves = {leaf.key: leaf for leaf in flatten_leaves(load_taxonomy())}
    jeans = leaves["jeans"]
    assert jeans.category_key == "fashion-and-apparel"
    assert jeans.parents == ("fashion-and-apparel", "womens-wear")


def test_leaf_search_terms():
    leaves = {leaf.key: leaf for leaf in flatten_leaves(load_taxonomy())}
    assert leaves["tumblers-and-bottles"].search_terms == ("tumbler", "insulated bottle")
    assert leaves["mugs"].search_terms == ("Mugs",)


def test_bare_list_and_string_leaves(tmp_path):
    path = tmp_path / "taxonomy.json"
    path.write_text(json.dumps([
        {"label": "Garden Tools", "leaves": ["Pruning Shears", {"label": "Hose Reels"}]},
    ]), encoding="utf-8")

    leaves = flatten_leaves(load_taxonomy(path))

    assert [(l.key, l.category_key) for l in leaves] == [
        ("pruning-shears", "garden-tools"),
        ("hose-reels", "garden-tools"),
    ]


def test_missing_taxonomy_file(tmp_path):
    with pytest.raises(ConfigurationError, match="not found"):
        load_taxonomy(tmp_path / "nope.json")


def test_invalid_taxonomy_json(tmp_path):
    path = tmp_path / "broken.json"
    path.write_text("{not json", encoding="utf-8")
    with pytest.raises(ConfigurationError, match="not valid JSON"):
        load_taxonomy(path)


def test_taxonomy_wrong_shape(tmp_path):
    path = tmp_path / "shape.json"
    path.write_text(json.dumps({"categories": "lamps"}), encoding="utf-8")
    with pytest.raises(ConfigurationError):
        load_taxonomy(path)


def test_node_without_key_or_label():
    with pytest.raises(ConfigurationError):
        flatten_leaves([{"leaves": ["Lamps"]}])
