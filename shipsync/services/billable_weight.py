"""
Dimensional (DIM) and billable weight.

Divisor by route:
  - origin or destination AU        -> 110
  - US -> US                        -> 166, but only when actual >= 16 oz
  - anything else                   -> 139

dim_oz = round(L x W x H / divisor x 16), half-up, inches in, ounces out.
billable = max(actual, dim) when a divisor applies and all dimensions are
positive, otherwise the actual weight.
"""
from dataclasses import dataclass
from typing import Optional

from shipsync.utils.helpers import round_half_up

_COUNTRY_ALIASES = {
    "USA": "US",
    "UNITED STATES": "US",
    "AUS": "AU",
    "AUSTRALIA": "AU",
}


def normalize_country(country: Optional[str], default: str = "US") -> str:
    if not country:
        return default
    code = str(country).strip().upper()
    return _COUNTRY_ALIASES.get(code, code)


def get_dim_divisor(origin_country: str, destination_country: str, actual_weight_oz: float) -> Optional[int]:
    origin = normalize_country(origin_country)
    destination = normalize_country(destination_country)
    if origin == "AU" or destination == "AU":
        return 110
    if origin == "US" and destination == "US":
        return 166 if (actual_weight_oz or 0) >= 16 else None
    return 139


@dataclass
class BillableWeight:
    actual_weight_oz: float
    dim_weight_oz: Optional[float]
    billable_weight_oz: float
    divisor: Optional[int]


def compute_billable_weight(
    length_in: Optional[float],
    width_in: Optional[float],
    height_in: Optional[float],
    actual_weight_oz: Optional[float],
    origin_country: Optional[str] = "US",
    destination_country: Optional[str] = "US",
) -> BillableWeight:
    actual = float(actual_weight_oz or 0)
    length, width, height = (float(v or 0) for v in (length_in, width_in, height_in))

    divisor = get_dim_divisor(origin_country, destination_country, actual)
    if divisor and length > 0 and width > 0 and height > 0:
        dim = round_half_up(length * width * height / divisor * 16)
        return BillableWeight(actual, dim, max(actual, dim), divisor)
    return BillableWeight(actual, None, actual, divisor)
