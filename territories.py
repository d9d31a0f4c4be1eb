"""ZIP-to-territory detection."""

from utils import normalize_zip


def _territory_zips(territory: dict) -> set[str]:
    zips = set()
    for value in territory.get("zip_codes") or []:
        normalized = normalize_zip(value)
        if normalized:
            zips.add(normalized)
    return zips


def detect_territory(zip_code: str | None, territories: list[dict]) -> dict | None:
    """
    Find the territory serving a ZIP.

    A territory listing the exact ZIP wins. Otherwise the first territory with
    any ZIP sharing the 3-digit prefix (same sectional center) is used.
    Inactive territories are ignored. Returns None when nothing matches or the
    ZIP is malformed.
    """
    zip5 = normalize_zip(zip_code)
    if not zip5:
        return None

    active = [t for t in territories if t.get("is_active", True)]
    indexed = [(t, _territory_zips(t)) for t in active]

    for territory, zips in indexed:
        if zip5 in zips:
            return territory

    prefix = zip5[:3]
    for territory, zips in indexed:
        if any(z.startswith(prefix) for z in zips):
            return territory

    return None


def territory_match_type(zip_code: str | None, territory: dict | None) -> str | None:
    """'exact' or 'prefix' for a territory returned by detect_territory."""
    zip5 = normalize_zip(zip_code)
    if not zip5 or not territory:
        return None
    zips = _territory_zips(territory)
    if zip5 in zips:
        return "exact"
    if any(z.startswith(zip5[:3]) for z in zips):
        return "prefix"
    return None
