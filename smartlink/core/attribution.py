"""
Attribution: marketing identifiers captured at view/click time.

Sources, first non-empty wins per key:
  1. Current page URL query string
  2. Referrer URL query string
The Meta click id additionally falls back to the cookie jar (fbclid cookie,
or the id embedded in the _fbc cookie "fb.1.<ts>.<fbclid>").
"""

from urllib.parse import parse_qsl, urlsplit

ATTR_PARAM_KEYS = (
    "utm_source",
    "utm_medium",
    "utm_campaign",
    "utm_content",
    "utm_term",
    "campaign_id",
    "adset_id",
    "ad_id",
    "fbclid",
    "gclid",
    "ttclid",
    "msclkid",
    # Name hints, used by campaign reporting when the ad tool templated them in
    "adset_name",
    "ad_name",
)

MAX_VALUE_LENGTH = 256

CLICK_ID_COOKIES = ("fbclid",)


def _query_of(source) -> dict[str, str]:
    """Accept a URL, a bare query string, or an already-parsed mapping."""
    if source is None:
        return {}
    if isinstance(source, dict):
        return {str(k): str(v) for k, v in source.items() if v is not None}
    text = str(source)
    if "://" in text or text.startswith("/"):
        text = urlsplit(text).query
    elif text.startswith("?"):
        text = text[1:]
    # keep the first occurrence of a repeated key, like URLSearchParams.get()
    result: dict[str, str] = {}
    for key, value in parse_qsl(text, keep_blank_values=True):
        result.setdefault(key, value)
    return result


def click_id_from_fbc(fbc: str | None) -> str | None:
    """Extract the fbclid from an _fbc cookie value ("fb.1.<ts>.<fbclid>")."""
    if not fbc:
        return None
    parts = fbc.strip().split(".", 3)
    if len(parts) == 4 and parts[0] == "fb" and parts[3]:
        return parts[3]
    return None


def _cookie_click_id(cookies: dict | None) -> str | None:
    if not cookies:
        return None
    for name in CLICK_ID_COOKIES:
        value = (cookies.get(name) or "").strip()
        if value:
            return value
    return click_id_from_fbc(cookies.get("_fbc"))


def collect_attribution(current, referrer=None, cookies: dict | None = None) -> dict[str, str]:
    """Flat allow-listed mapping of marketing params, values length-capped."""
    sources = [_query_of(current), _query_of(referrer)]
    result: dict[str, str] = {}

    for key in ATTR_PARAM_KEYS:
        for params in sources:
            value = (params.get(key) or "").strip()
            if value:
                result[key] = value[:MAX_VALUE_LENGTH]
                break

    if "fbclid" not in result:
        cookie_value = _cookie_click_id(cookies)
        if cookie_value:
            result["fbclid"] = cookie_value[:MAX_VALUE_LENGTH]

    return result


def sanitize_attribution(raw: dict | None, max_keys: int = 32) -> dict[str, str]:
    """Server-side normalization of a client-supplied attribution mapping."""
    if not raw:
        return {}
    result: dict[str, str] = {}
    for key, value in raw.items():
        if len(result) >= max_keys:
            break
        name = str(key).strip()[:64]
        text = "" if value is None else str(value).strip()
        if name and text:
            result[name] = text[:MAX_VALUE_LENGTH]
    return result
