"""
Entitlement extraction from raw provisioning request payloads.
"""

import json
from typing import Dict, Any, Optional, List, Iterable, Sequence

from shared.logging import get_logger
from shared.errors import MalformedPayloadError
from ..diffing.models import Attribute, Category, EntitlementRecord, Snapshot
from .normalize import coerce_date, coerce_number, parse_request_number, parse_timestamp


# Nested location used by current payloads, then the legacy top-level arrays.
_NESTED_KEYS: Dict[Category, str] = {
    Category.MODEL: "modelEntitlements",
    Category.DATA: "dataEntitlements",
    Category.APP: "appEntitlements",
}
_FALLBACK_KEYS: Dict[Category, str] = {
    Category.MODEL: "productEntitlements",
    Category.DATA: "dataEntitlements",
    Category.APP: "appEntitlements",
}

_FIELD_ALIASES: Dict[str, Sequence[str]] = {
    Attribute.PRODUCT_CODE.value: ("productCode", "product_code", "ProductCode"),
    Attribute.START_DATE.value: ("startDate", "start_date", "StartDate"),
    Attribute.END_DATE.value: ("endDate", "end_date", "EndDate"),
    Attribute.QUANTITY.value: ("quantity", "Quantity"),
    Attribute.PACKAGE_NAME.value: ("packageName", "package_name", "PackageName"),
    Attribute.PRODUCT_MODIFIER.value: ("productModifier", "product_modifier", "ProductModifier"),
}

_TENANT_PATHS = (
    ("properties", "provisioningDetail", "tenantName"),
    ("properties", "tenantName"),
    ("preferredSubdomain1",),
    ("preferredSubdomain2",),
    ("properties", "preferredSubdomain1"),
    ("properties", "preferredSubdomain2"),
    ("tenantName",),
)
_REGION_PATHS = (
    ("properties", "provisioningDetail", "region"),
    ("properties", "region"),
    ("region",),
)


def _lookup(payload: Any, path: Iterable[str]) -> Any:
    value = payload
    for part in path:
        if isinstance(value, dict) and part in value:
            value = value[part]
        else:
            return None
    return value


def _first(item: Dict[str, Any], aliases: Sequence[str]) -> Any:
    for alias in aliases:
        value = item.get(alias)
        if value is not None and value != "":
            return value
    return None


class EntitlementExtractor:
    """Builds immutable snapshots from raw request payloads."""

    def __init__(self, multi_instance_product_codes: Optional[Iterable[str]] = None):
        self.logger = get_logger("reconciliation.extractor")
        self.multi_instance_product_codes = frozenset(
            multi_instance_product_codes if multi_instance_product_codes is not None
            else ("IC-DATABRIDGE",)
        )

    def extract(
        self,
        payload: Any,
        request_id: str,
        created_at: Any = None,
        account: Optional[str] = None,
        deployment: Optional[str] = None,
        action: Optional[str] = None,
    ) -> Snapshot:
        """Extract a snapshot from one request payload.

        Malformed payloads and categories degrade to empty entitlement lists.
        """
        try:
            document = self._decode(payload)
        except MalformedPayloadError as e:
            self.logger.warning(
                "Malformed payload, no entitlements extracted",
                request_id=request_id, error=e.message
            )
            document = {}

        entitlements: List[EntitlementRecord] = []
        for category in Category:
            entitlements.extend(self._extract_category(document, category, request_id))

        request_number = parse_request_number(request_id)
        if request_number is None:
            self.logger.warning("Request identifier has no numeric suffix", request_id=request_id)

        snapshot = Snapshot(
            request_id=request_id,
            request_number=request_number,
            created_at=parse_timestamp(created_at),
            entitlements=tuple(entitlements),
            account=account,
            deployment=deployment,
            tenant_name=self._first_path(document, _TENANT_PATHS),
            region=self._first_path(document, _REGION_PATHS),
            action=action,
        )

        self.logger.debug(
            "Snapshot extracted",
            request_id=request_id,
            entitlements=len(entitlements),
            orderable=snapshot.is_orderable
        )
        return snapshot

    def _decode(self, payload: Any) -> Dict[str, Any]:
        """Decode a payload given as JSON text or an already-parsed mapping."""
        if payload is None or payload == "":
            return {}
        if isinstance(payload, (str, bytes)):
            try:
                payload = json.loads(payload)
            except ValueError as e:
                raise MalformedPayloadError(f"Invalid JSON: {e}")
        if not isinstance(payload, dict):
            raise MalformedPayloadError(
                "Payload is not an object", {"type": type(payload).__name__}
            )
        return payload

    def _category_items(self, document: Dict[str, Any], category: Category) -> List[Any]:
        nested = _lookup(document, ("properties", "provisioningDetail", "entitlements", _NESTED_KEYS[category]))
        fallback = document.get(_FALLBACK_KEYS[category])

        items: List[Any] = []
        for source in (nested, fallback):
            if source is None:
                continue
            if isinstance(source, list):
                items.extend(source)
            else:
                self.logger.warning(
                    "Entitlement category is not a list",
                    category=category.value, type=type(source).__name__
                )
        return items

    def _extract_category(
        self, document: Dict[str, Any], category: Category, request_id: str
    ) -> List[EntitlementRecord]:
        records = []
        dropped = 0

        for item in self._category_items(document, category):
            record = self._build_record(item, category, request_id)
            if record is None:
                dropped += 1
            else:
                records.append(record)

        if dropped:
            self.logger.debug(
                "Dropped entitlements without product code",
                request_id=request_id, category=category.value, dropped=dropped
            )
        return records

    def _build_record(
        self, item: Any, category: Category, request_id: str
    ) -> Optional[EntitlementRecord]:
        if not isinstance(item, dict):
            return None

        product_code = _first(item, _FIELD_ALIASES[Attribute.PRODUCT_CODE.value])
        if product_code is None:
            return None
        product_code = str(product_code)

        attributes: Dict[str, Any] = {}
        for name in category.schema:
            if name == Attribute.PRODUCT_CODE.value:
                attributes[name] = product_code
                continue
            value = _first(item, _FIELD_ALIASES[name])
            if name in (Attribute.START_DATE.value, Attribute.END_DATE.value):
                value = coerce_date(value)
            elif name == Attribute.QUANTITY.value:
                value = coerce_number(value)
            attributes[name] = value

        multi_instance = category == Category.APP and product_code in self.multi_instance_product_codes
        source_request_id = request_id
        if multi_instance and item.get("sourceRequestId"):
            source_request_id = str(item["sourceRequestId"])

        return EntitlementRecord(
            category=category,
            product_code=product_code,
            product_name=str(item.get("name") or item.get("productName") or product_code),
            attributes=attributes,
            source_request_id=source_request_id,
            multi_instance=multi_instance,
            request_id=request_id,
        )

    def _first_path(self, document: Dict[str, Any], paths) -> Optional[str]:
        for path in paths:
            value = _lookup(document, path)
            if value:
                return str(value)
        return None
