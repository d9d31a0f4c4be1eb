"""
Shared data-access base for the FieldOps services.

Every service reads through the query cache, runs writes through _mutate
(notify, invalidate, re-raise), and uses the best-effort helpers below for
side steps the backend does not do for us.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Any, Callable, Iterable

from backend_client import BackendClient, in_
from errors import PipelineError
from query_cache import CacheKey, QueryCache

logger = logging.getLogger(__name__)


class Notifier(ABC):
    """Receives user-facing success/error messages from mutations."""

    @abstractmethod
    def success(self, message: str) -> None:
        ...

    @abstractmethod
    def error(self, message: str) -> None:
        ...


class LoggingNotifier(Notifier):
    """Default notifier: messages go to the log."""

    def success(self, message: str) -> None:
        logger.info(message)

    def error(self, message: str) -> None:
        logger.error(message)


@dataclass
class RepUser:
    """Sales rep profile joined onto quotes by user_id."""
    id: str
    full_name: str | None = None
    email: str | None = None
    phone: str | None = None

    @property
    def name(self) -> str:
        return self.full_name or self.email or "Unknown"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "phone": self.phone,
        }


class Repository:
    """Base class for table services."""

    def __init__(
        self,
        client: BackendClient,
        cache: QueryCache | None = None,
        notifier: Notifier | None = None,
    ):
        self.client = client
        self.cache = cache if cache is not None else QueryCache()
        self.notifier = notifier if notifier is not None else LoggingNotifier()

    def _query(self, key: CacheKey, fetch: Callable[[], Any]) -> Any:
        return self.cache.get_or_fetch(key, fetch)

    def _mutate(
        self,
        fn: Callable[[], Any],
        success: str | None = None,
        failure: str = "Operation failed",
        invalidate: Iterable[CacheKey] = (),
    ) -> Any:
        """Run a write, notify the outcome, and drop stale cache entries.

        Errors are reported to the notifier and re-raised unchanged. The
        listed prefixes are invalidated whether or not the write succeeds.
        """
        prefixes = list(invalidate)
        try:
            result = fn()
        except PipelineError as e:
            self.notifier.error(f"{failure}: {e.user_message}")
            raise
        except Exception as e:
            self.notifier.error(f"{failure}: {e}")
            raise
        finally:
            for prefix in prefixes:
                self.cache.invalidate(prefix)

        if success:
            self.notifier.success(success)
        return result

    @staticmethod
    def _now() -> str:
        return datetime.now(timezone.utc).isoformat()

    @staticmethod
    def _today() -> str:
        return date.today().isoformat()

    def _record_status_history(
        self,
        entity_type: str,
        entity_id: str,
        from_status: str | None,
        to_status: str,
        notes: str | None = None,
    ) -> None:
        """Append a status history row. Failures are logged, never raised."""
        try:
            self.client.insert("fsm_status_history", {
                "entity_type": entity_type,
                "entity_id": entity_id,
                "from_status": from_status,
                "to_status": to_status,
                "notes": notes,
            })
        except PipelineError as e:
            logger.warning(f"Failed to record {entity_type} status history for {entity_id}: {e.message}")

    def _transfer_custom_fields(
        self,
        source_type: str,
        source_id: str,
        target_type: str,
        target_id: str,
    ) -> None:
        """Copy custom field values between entities. Failures are logged, never raised."""
        try:
            self.client.rpc("transfer_custom_fields", {
                "p_source_entity_type": source_type,
                "p_source_entity_id": source_id,
                "p_target_entity_type": target_type,
                "p_target_entity_id": target_id,
            })
        except PipelineError as e:
            logger.warning(
                f"Failed to transfer custom fields {source_type}:{source_id} -> "
                f"{target_type}:{target_id}: {e.message}"
            )

    def _fetch_user_profiles(self, user_ids: Iterable[str | None]) -> dict[str, RepUser]:
        """Look up user profiles by id. Returns {} when the lookup fails."""
        ids = sorted({uid for uid in user_ids if uid})
        if not ids:
            return {}
        try:
            rows = self.client.select(
                "user_profiles",
                columns="id, full_name, email, phone",
                filters=[in_("id", ids)],
            )
        except PipelineError as e:
            logger.warning(f"Failed to fetch user profiles: {e.message}")
            return {}
        return {
            row["id"]: RepUser(
                id=row["id"],
                full_name=row.get("full_name"),
                email=row.get("email"),
                phone=row.get("phone"),
            )
            for row in rows
        }
