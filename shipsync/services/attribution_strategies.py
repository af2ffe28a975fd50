"""
Transaction attribution strategies

Each strategy handles one or more reference types and either returns a
tenant id or None. The attributor runs them in order and stops at the first
match:

  1. Shipment      shipment index
  2. FC (storage)  inventory id parsed from "{fc}-{inventory}-{location}",
                   falling back to additional_details.InventoryId
  3. Return        return index, then an order number found in the comment
  4. Default       configured fee routes to system tenants; credits cascade
                   shipment -> return -> receiving order
  5. TicketNumber  tenant display name found in the comment
  6. WRO / URO     receiving-order index
"""
import re
from typing import Any, Dict, List, Optional, Sequence, Tuple

from shipsync.config import Settings, get_settings
from shipsync.services.attribution_indexes import AttributionIndexes

ORDER_NUMBER_PATTERN = re.compile(r"order\s*(?:number|no\.?|#|id)?\s*[:#]?\s*#?\s*([A-Za-z0-9-]*\d[A-Za-z0-9-]*)", re.IGNORECASE)


def _details(tx: Dict[str, Any]) -> Dict[str, Any]:
    details = tx.get("additional_details")
    return details if isinstance(details, dict) else {}


def _comment(tx: Dict[str, Any]) -> str:
    comment = _details(tx).get("Comment")
    return comment if isinstance(comment, str) else ""


class AttributionStrategy:
    """Base strategy: claims a set of reference types."""

    name = "base"
    reference_types: Tuple[str, ...] = ()

    def handles(self, tx: Dict[str, Any]) -> bool:
        return tx.get("reference_type") in self.reference_types

    def try_attribute(self, tx: Dict[str, Any], indexes: AttributionIndexes) -> Optional[int]:
        raise NotImplementedError


class ShipmentStrategy(AttributionStrategy):
    name = "shipment"
    reference_types = ("Shipment",)

    def try_attribute(self, tx, indexes):
        return indexes.shipments.get(tx.get("reference_id"))


class StorageStrategy(AttributionStrategy):
    """FC storage fees: reference_id is "{FC_ID}-{InventoryId}-{LocationType}"."""

    name = "storage"
    reference_types = ("FC",)

    @staticmethod
    def parse_inventory_id(reference_id: Optional[str]) -> Optional[str]:
        if not reference_id:
            return None
        parts = str(reference_id).split("-")
        if len(parts) >= 2 and parts[1].strip():
            return parts[1].strip()
        return None

    def try_attribute(self, tx, indexes):
        tenant_id = indexes.inventory.get(self.parse_inventory_id(tx.get("reference_id")))
        if tenant_id is None:
            tenant_id = indexes.inventory.get(_details(tx).get("InventoryId"))
        return tenant_id


class ReturnStrategy(AttributionStrategy):
    name = "return"
    reference_types = ("Return",)

    @staticmethod
    def parse_order_number(comment: str) -> Optional[str]:
        match = ORDER_NUMBER_PATTERN.search(comment or "")
        return match.group(1) if match else None

    def try_attribute(self, tx, indexes):
        tenant_id = indexes.returns.get(tx.get("reference_id"))
        if tenant_id is None:
            tenant_id = indexes.orders.get(self.parse_order_number(_comment(tx)))
        return tenant_id


class FeeRoutingStrategy(AttributionStrategy):
    """
    Default-typed transactions, routed by fee label.

    `fee_routes` maps a fee label to a system tenant's display name;
    `credit_labels` are resolved through the shipment, return and
    receiving-order indexes. Any other label stays unattributed.
    """

    name = "fee_routing"
    reference_types = ("Default",)

    def __init__(self, fee_routes: Dict[str, str], credit_labels: Sequence[str]):
        self.fee_routes = dict(fee_routes)
        self.credit_labels = set(credit_labels)

    def try_attribute(self, tx, indexes):
        fee = tx.get("transaction_fee")
        if fee in self.fee_routes:
            return indexes.system_tenants.get(self.fee_routes[fee])
        if fee in self.credit_labels:
            reference_id = tx.get("reference_id")
            for index in (indexes.shipments, indexes.returns, indexes.receiving):
                tenant_id = index.get(reference_id)
                if tenant_id is not None:
                    return tenant_id
        return None


class TicketNumberStrategy(AttributionStrategy):
    """
    Care-ticket adjustments: look for a tenant's display name in the comment.

    Names (and their hyphen-free spellings) are tried longest first so
    "Acme Pro" wins over "Acme". If no full name matches, a
    "<parent>/<fragment>" pair in the comment is tried, where the fragment
    must be the first word of exactly one tenant's name.
    """

    name = "ticket_number"
    reference_types = ("TicketNumber",)

    @staticmethod
    def _variants(name: str) -> List[str]:
        lowered = name.lower().strip()
        variants = {lowered, lowered.replace("-", " "), lowered.replace("-", "")}
        return [v for v in variants if v]

    @staticmethod
    def _contains(haystack: str, needle: str) -> bool:
        return re.search(r"(?<!\w)" + re.escape(needle) + r"(?!\w)", haystack) is not None

    def try_attribute(self, tx, indexes):
        comment = _comment(tx).lower()
        if not comment:
            return None

        patterns = []
        for tenant_id, name in indexes.tenant_names.items():
            for variant in self._variants(name):
                patterns.append((variant, tenant_id))
        patterns.sort(key=lambda p: len(p[0]), reverse=True)
        for variant, tenant_id in patterns:
            if self._contains(comment, variant):
                return tenant_id

        for fragment in re.findall(r"\S+\s*/\s*([\w&'.-]+)", comment):
            fragment = fragment.strip(".'")
            if len(fragment) < 3:
                continue
            matches = {
                tenant_id for tenant_id, name in indexes.tenant_names.items()
                if re.split(r"[-\s]", name.lower().strip())[0] == fragment
            }
            if len(matches) == 1:
                return matches.pop()
        return None


class ReceivingStrategy(AttributionStrategy):
    name = "receiving"
    reference_types = ("WRO", "URO")

    def try_attribute(self, tx, indexes):
        return indexes.receiving.get(tx.get("reference_id"))


def default_strategies(settings: Optional[Settings] = None) -> List[AttributionStrategy]:
    """The standard cascade, in priority order."""
    settings = settings or get_settings()
    return [
        ShipmentStrategy(),
        StorageStrategy(),
        ReturnStrategy(),
        FeeRoutingStrategy(settings.system_fee_routes, settings.credit_fee_labels),
        TicketNumberStrategy(),
        ReceivingStrategy(),
    ]


class TransactionAttributor:
    """Runs the strategy cascade for one transaction."""

    def __init__(self, strategies: Optional[List[AttributionStrategy]] = None, settings: Optional[Settings] = None):
        self.strategies = strategies if strategies is not None else default_strategies(settings)

    def attribute(self, tx: Dict[str, Any], indexes: AttributionIndexes) -> Optional[int]:
        for strategy in self.strategies:
            if not strategy.handles(tx):
                continue
            tenant_id = strategy.try_attribute(tx, indexes)
            if tenant_id is not None:
                return tenant_id
        return None
