"""
Crew and territory data access.

Crews carry the home coordinates and daily capacity the routing and
assignment helpers work from; territories carry the ZIP lists used for
territory detection.
"""

import logging

from backend_client import eq
from errors import ValidationError
from query_cache import make_key
from repository import Repository
from territories import detect_territory
from utils import normalize_zip

logger = logging.getLogger(__name__)

CREW_COLUMNS = "*, territory:territories!home_territory_id(id, name, code)"

CREW_DETAIL_COLUMNS = """
    *,
    territory:territories!home_territory_id(id, name, code),
    members:crew_members(*),
    lead_user:user_profiles!lead_user_id(id, email, full_name)
"""


class CrewService(Repository):
    """Reads and writes for crews."""

    def list_crews(self, active_only: bool = True) -> list[dict]:
        conditions = [eq("is_active", True)] if active_only else []
        return self._query(
            make_key("crews", active_only),
            lambda: self.client.select("crews", columns=CREW_COLUMNS, filters=conditions, order="name"),
        )

    def get_crew(self, crew_id: str | None) -> dict | None:
        if not crew_id:
            return None
        return self._query(
            make_key("crews", crew_id),
            lambda: self.client.select_one("crews", columns=CREW_DETAIL_COLUMNS, filters=[eq("id", crew_id)]),
        )

    def create_crew(self, data: dict) -> dict:
        if not data.get("name") or not data.get("code"):
            raise ValidationError("Crew name and code are required")
        row = {"is_active": True, "product_skills": [], **data}
        crew = self._mutate(
            lambda: self.client.insert_one("crews", row),
            failure="Failed to create crew",
            invalidate=[("crews",)],
        )
        self.notifier.success(f"Crew {crew.get('name')} created")
        return crew

    def update_crew(self, crew_id: str, data: dict) -> None:
        values = {**data, "updated_at": self._now()}
        self._mutate(
            lambda: self.client.update("crews", values, [eq("id", crew_id)]),
            success="Crew updated",
            failure="Failed to update crew",
            invalidate=[("crews",)],
        )

    def deactivate_crew(self, crew_id: str) -> None:
        """Crews are never deleted; inactive crews drop out of scheduling."""
        self._mutate(
            lambda: self.client.update(
                "crews", {"is_active": False, "updated_at": self._now()}, [eq("id", crew_id)]
            ),
            success="Crew deactivated",
            failure="Failed to deactivate crew",
            invalidate=[("crews",)],
        )


class TerritoryService(Repository):
    """Reads and writes for territories."""

    def list_territories(self, active_only: bool = True) -> list[dict]:
        conditions = [eq("is_active", True)] if active_only else []
        return self._query(
            make_key("territories", active_only),
            lambda: self.client.select("territories", filters=conditions, order="name"),
        )

    def update_territory_zips(self, territory_id: str, zip_codes: list[str]) -> list[str]:
        """Replace a territory's ZIP list. ZIPs are normalized, deduplicated and sorted."""
        cleaned = set()
        bad = []
        for value in zip_codes:
            normalized = normalize_zip(value)
            if normalized:
                cleaned.add(normalized)
            else:
                bad.append(value)
        if bad:
            raise ValidationError(f"Invalid ZIP code(s): {', '.join(str(b) for b in bad)}")

        zips = sorted(cleaned)
        self._mutate(
            lambda: self.client.update(
                "territories", {"zip_codes": zips, "updated_at": self._now()}, [eq("id", territory_id)]
            ),
            success=f"Territory updated ({len(zips)} ZIPs)",
            failure="Failed to update territory",
            invalidate=[("territories",)],
        )
        return zips

    def territory_for_zip(self, zip_code: str | None) -> dict | None:
        """Detect the territory for a ZIP against the active territories."""
        return detect_territory(zip_code, self.list_territories(active_only=True))
