import json

import pytest

from services.context_import import ContextImportError, context_from_wizard_export, import_context


def wizard_export(**overrides):
    data = {
        "brandInfo": {
            "name": "Kids&Us English",
            "shortName": "Kids&Us",
            "domain": "kidsandus.es",
            "language": "es",
            "sector": "Language schools",
            "portfolio": [{"name": "English for toddlers", "keywordSeeds": ["ingles bebes"]}],
        },
        "competitors": {
            "items": [
                {"name": "Kumon", "domain": "kumon.es"},
                {"name": "British Council", "shortName": "BC", "domain": "britishcouncil.es"},
            ]
        },
        "personas": {"items": [{"name": "Busy parent", "keywordSeeds": ["clases ingles niños"]}]},
        "funnel": {
            "stages": [
                {
                    "name": "Awareness",
                    "goal": "Discover options",
                    "categories": [{"name": "Problems", "keywordSeeds": ["niño no habla ingles"]}],
                }
            ]
        },
        "customKeywords": {"customKeywords": ["academia ingles"]},
    }
    data.update(overrides)
    return data


def test_builds_context_from_wizard_export():
    context = context_from_wizard_export(wizard_export())

    assert [b.short_name for b in context.brands] == ["Kids&Us", "Kumon", "BC"]
    assert [b.is_competitor for b in context.brands] == [False, True, True]
    assert context.own_brand.short_name == "Kids&Us"
    assert context.own_brand.sectors == ["Language schools"]
    assert context.own_brand.portfolio[0].keyword_seeds == ["ingles bebes"]
    assert context.personas[0].name == "Busy parent"
    assert context.funnel.stages[0].stage == "Awareness"
    assert context.funnel.stages[0].categories[0].keyword_seeds == ["niño no habla ingles"]
    assert context.custom_keywords == ["academia ingles"]
    assert context.seed_keywords == []


def test_sector_can_come_from_sectors_list():
    data = wizard_export()
    del data["brandInfo"]["sector"]
    data["brandInfo"]["sectors"] = ["Education"]

    context = context_from_wizard_export(data)

    assert context.own_brand.sectors == ["Education"]


def test_seed_keywords_are_kept():
    context = context_from_wizard_export(wizard_export(seedKeywords=[["a", "b"], "c"]))

    assert context.seed_keywords == [["a", "b"], "c"]


@pytest.mark.parametrize("field", ["domain", "language", "sector"])
def test_missing_brand_field_is_rejected(field):
    data = wizard_export()
    del data["brandInfo"][field]

    with pytest.raises(ContextImportError, match=field):
        context_from_wizard_export(data)


def test_missing_personas_is_rejected():
    data = wizard_export()
    del data["personas"]

    with pytest.raises(ContextImportError, match="personas.items"):
        context_from_wizard_export(data)


def test_non_object_export_is_rejected():
    with pytest.raises(ContextImportError):
        context_from_wizard_export(["not", "an", "object"])


def test_invalid_nested_brand_is_rejected():
    data = wizard_export(competitors={"items": [{"name": "NoDomain"}]})

    with pytest.raises(ContextImportError, match="Invalid wizard export"):
        context_from_wizard_export(data)


def test_import_context_from_file(tmp_path):
    path = tmp_path / "wizard.json"
    path.write_text(json.dumps(wizard_export(), ensure_ascii=False), encoding="utf-8")

    context = import_context(path)

    assert context.own_brand.domain == "kidsandus.es"


def test_import_context_missing_file(tmp_path):
    with pytest.raises(ContextImportError, match="not found"):
        import_context(tmp_path / "nope.json")


def test_import_context_invalid_json(tmp_path):
    path = tmp_path / "wizard.json"
    path.write_text("{oops", encoding="utf-8")

    with pytest.raises(ContextImportError, match="not valid JSON"):
        import_context(path)
