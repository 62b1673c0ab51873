"""Parsing of the payment gateway return URL."""
from typing import Mapping, Optional
from urllib.parse import parse_qsl, urlsplit

from .schemas import RedirectParams

# Gateway-native parameters
CONFIRMATION_TOKEN_PARAM = "transaction_uid"
PAGE_REQUEST_PARAM = "page_request_uid"

# Legacy/internal parameters
STATUS_PARAM = "status"
ORDER_PARAM = "order"
TYPE_PARAM = "type"
FREE_PARAM = "free"


def _value(query: Mapping[str, str], name: str) -> Optional[str]:
    value = query.get(name)
    if value is None:
        return None
    value = value.strip()
    return value or None


def parse_redirect_params(query: Mapping[str, str]) -> RedirectParams:
    """Normalize return URL query parameters. Absent or blank values are omitted."""
    return RedirectParams(
        confirmation_token=_value(query, CONFIRMATION_TOKEN_PARAM),
        page_request_id=_value(query, PAGE_REQUEST_PARAM),
        raw_status=_value(query, STATUS_PARAM),
        order_id=_value(query, ORDER_PARAM),
        item_type_hint=_value(query, TYPE_PARAM) or "product",
        is_free=_value(query, FREE_PARAM) == "true",
    )


def parse_return_url(url: str) -> RedirectParams:
    """Parse a full return URL."""
    return parse_redirect_params(dict(parse_qsl(urlsplit(url).query)))
