"""Helpers that convert raw portal payloads into internal models."""
from __future__ import annotations

from typing import Any, Dict, Iterable, List, Optional

from catalog_etl.models import Category, Record, Resource

_ID_KEYS = ("datasetID", "datasetId", "id")
TABULAR_FORMATS = frozenset({"CSV", "TSV", "XLSX", "XLS"})


def _first_text(item: Dict[str, Any], keys: Iterable[str]) -> str:
    for key in keys:
        value = item.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return ""


def get_external_id(item: Dict[str, Any]) -> Optional[str]:
    """Return the portal's dataset id, or None when the item carries none."""
    for key in _ID_KEYS:
        value = item.get(key)
        if value not in (None, ""):
            return str(value)
    return None


def _extract_organization(item: Dict[str, Any]) -> Optional[str]:
    name = _first_text(item, ("publisherNameAr", "publisherNameEn"))
    if name:
        return name
    for key in ("organization", "provider"):
        nested = item.get(key)
        if isinstance(nested, dict):
            name = _first_text(nested, ("titleAr", "titleEn", "name"))
            if name:
                return name
    return None


def source_url_for(base_url: str, external_id: str) -> str:
    return f"{base_url.rstrip('/')}/ar/datasets/view/{external_id}"


def normalize_record(record: Record) -> Record:
    """Apply the name/description fallback chains to a record."""
    name_localized = record.name_localized or record.name or record.external_id
    name = record.name or name_localized
    return record.model_copy(
        update={
            "name_localized": name_localized,
            "name": name,
            "description": record.description or "",
        }
    )


def to_record(item: Dict[str, Any], category: Category, base_url: str) -> Record:
    """Map one listing item into a record without resources."""
    external_id = get_external_id(item)
    if external_id is None:
        raise ValueError("dataset id is missing in payload")

    record = Record(
        external_id=external_id,
        name=_first_text(item, ("titleEn", "title", "titleAr")),
        name_localized=_first_text(item, ("titleAr", "title", "titleEn")),
        description=_first_text(item, ("descriptionAr", "description", "descriptionEn")),
        category=category.display_name or category.id,
        source_url=source_url_for(base_url, external_id),
        organization=_extract_organization(item),
    )
    return normalize_record(record)


def _column_names(raw: Any) -> List[str]:
    names: List[str] = []
    if not isinstance(raw, list):
        return names
    for column in raw:
        if isinstance(column, dict):
            name = column.get("name") or column.get("title")
        else:
            name = column
        if isinstance(name, str) and name.strip():
            names.append(name.strip())
    return names


def to_resource(raw: Dict[str, Any]) -> Optional[Resource]:
    """Map a detail resource entry; entries without a URL are dropped."""
    url = _first_text(raw, ("downloadUrl", "url"))
    if not url:
        return None
    return Resource(
        external_id=str(raw.get("resourceID") or raw.get("id") or ""),
        url=url,
        display_name=_first_text(raw, ("titleAr", "titleEn", "title", "name")) or "Resource",
        format=_first_text(raw, ("fileFormat", "format")).upper(),
        columns=_column_names(raw.get("columns")),
    )


def extract_resources(detail: Dict[str, Any]) -> List[Resource]:
    raw_resources = detail.get("resources") or []
    if not isinstance(raw_resources, list):
        return []
    resources = []
    for raw in raw_resources:
        if not isinstance(raw, dict):
            continue
        resource = to_resource(raw)
        if resource is not None:
            resources.append(resource)
    return resources


def infer_columns(resources: List[Resource]) -> List[str]:
    """Column names of the first tabular resource that declares a schema."""
    for resource in resources:
        if resource.format in TABULAR_FORMATS and resource.columns:
            return list(resource.columns)
    return []


def apply_detail(record: Record, detail: Dict[str, Any]) -> Record:
    """Merge a detail payload into a listing record."""
    resources = extract_resources(detail)
    update: Dict[str, Any] = {
        "resources": resources,
        "columns": infer_columns(resources),
    }
    description = _first_text(detail, ("descriptionAr", "description", "descriptionEn"))
    if description:
        update["description"] = description
    organization = _extract_organization(detail)
    if organization:
        update["organization"] = organization
    return record.model_copy(update=update)


def to_category(raw: Dict[str, Any]) -> Optional[Category]:
    """Map a ``/api/categories`` entry into a category."""
    category_id = raw.get("name") or raw.get("categoryID") or raw.get("id")
    if not category_id:
        return None
    expected = raw.get("noDatasets") or raw.get("datasetsCount") or 0
    try:
        expected_count = int(expected)
    except (TypeError, ValueError):
        expected_count = 0
    return Category(
        id=str(category_id),
        display_name=_first_text(raw, ("titleAr", "title", "titleEn")),
        expected_count=expected_count,
    )
