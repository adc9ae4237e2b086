import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Union

from pydantic import ValidationError

from models.schemas import Brand, FlaggedBrand, Funnel, Persona, PipelineContext

logger = logging.getLogger(__name__)


class ContextImportError(ValueError):
    pass


def _require(data: Dict[str, Any], dotted: str) -> Any:
    current: Any = data
    for part in dotted.split("."):
        if not isinstance(current, dict) or current.get(part) in (None, ""):
            raise ContextImportError(f"Wizard export is missing required field '{dotted}'")
        current = current[part]
    return current


def _brand_sector(brand_info: Dict[str, Any]) -> str:
    sector = brand_info.get("sector")
    if not sector:
        sectors = brand_info.get("sectors") or []
        sector = sectors[0] if sectors else None
    if not sector:
        raise ContextImportError("Wizard export is missing required field 'brandInfo.sector'")
    return sector


def _flagged(raw: Dict[str, Any], is_competitor: bool) -> FlaggedBrand:
    data = dict(raw)
    if not data.get("shortName") and not data.get("short_name"):
        data["shortName"] = data.get("name", "")
    brand = Brand.model_validate(data)
    return FlaggedBrand(**brand.model_dump(), is_competitor=is_competitor)


def _funnel(raw: Any) -> Funnel:
    stages = (raw or {}).get("stages") or []
    return Funnel.model_validate(
        {"stages": [{**stage, "stage": stage.get("name") or stage.get("stage")} for stage in stages]}
    )


def validate_wizard_export(data: Any) -> Dict[str, Any]:
    """Check the fields the pipeline cannot run without."""
    if not isinstance(data, dict):
        raise ContextImportError("Wizard export must be a JSON object")

    _require(data, "brandInfo.domain")
    _require(data, "brandInfo.language")
    _brand_sector(data["brandInfo"])

    personas = _require(data, "personas.items")
    if not isinstance(personas, list):
        raise ContextImportError("Wizard export field 'personas.items' must be a list")
    return data


def context_from_wizard_export(data: Dict[str, Any]) -> PipelineContext:
    data = validate_wizard_export(data)
    brand_info = data["brandInfo"]

    try:
        own_brand = _flagged(brand_info, is_competitor=False)
        competitors = [_flagged(c, is_competitor=True) for c in (data.get("competitors") or {}).get("items") or []]
        personas = [Persona.model_validate(p) for p in data["personas"]["items"]]
        funnel = _funnel(data.get("funnel"))
    except ValidationError as e:
        raise ContextImportError(f"Invalid wizard export: {e}") from e

    if not own_brand.sectors:
        own_brand = own_brand.model_copy(update={"sectors": [_brand_sector(brand_info)]})

    custom: List[str] = (data.get("customKeywords") or {}).get("customKeywords") or []
    seeds: List[Union[List[str], str]] = data.get("seedKeywords") or []

    return PipelineContext(
        brands=[own_brand, *competitors],
        personas=personas,
        funnel=funnel,
        custom_keywords=custom,
        seed_keywords=seeds,
    )


def import_context(path: Union[str, Path]) -> PipelineContext:
    path = Path(path)
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError as e:
        raise ContextImportError(f"Wizard export {path} not found") from e
    except json.JSONDecodeError as e:
        raise ContextImportError(f"Wizard export {path} is not valid JSON: {e}") from e

    context = context_from_wizard_export(data)
    logger.info(
        f"Imported context from {path}: {len(context.brands)} brands, "
        f"{len(context.personas)} personas, {len(context.funnel.stages)} funnel stages"
    )
    return context
