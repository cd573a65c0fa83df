"""Applies dispatched events to the client-visible state.

All mutations are synchronous; within one event loop they are atomic with
respect to other dispatcher invocations.

Upsert rules:
    - look the record up by id, append when absent
    - shallow-merge only fields that are not None
    - once a record is in a FINAL status, an update carrying a different
      status is dropped entirely (terminal states never regress)
"""

from collections.abc import Callable, Iterable
from dataclasses import replace
from typing import Any

import structlog

from genrelay.models.enums import BatchStatus, MaskStatus, OperationType, SelectionKind, VariationStatus
from genrelay.models.state import Batch, ClientState, MaskState, Selection, Variation, record_fields

logger = structlog.get_logger(__name__)

_VARIATION_FIELDS = record_fields(Variation)
_BATCH_FIELDS = record_fields(Batch)


def _record_updates(record: Any, allowed: frozenset[str]) -> dict[str, Any]:
    return {k: getattr(record, k) for k in allowed if k != "id"}


def _merge_fields(allowed: frozenset[str], updates: dict[str, Any]) -> dict[str, Any]:
    unknown = set(updates) - allowed
    if unknown:
        raise TypeError(f"Unknown record fields: {sorted(unknown)}")
    return {k: v for k, v in updates.items() if v is not None and k != "id"}


class StateReconciler:
    """Single writer of `ClientState`.

    `on_change(slice_name)` is called after every effective mutation; it is a
    plain callback so UI adapters can re-render from `state`.
    """

    def __init__(self, state: ClientState | None = None) -> None:
        self.state = state or ClientState()
        self.on_change: Callable[[str], Any] | None = None

    def _changed(self, slice_name: str) -> None:
        if self.on_change is not None:
            self.on_change(slice_name)

    # -------------------------------------------------------------------------
    # Variations and batches
    # -------------------------------------------------------------------------

    def upsert_variation(self, variation_id: int | str, **fields: Any) -> Variation | None:
        """Insert or merge a variation. Returns None if the update was dropped."""
        status = fields.get("status")
        if status is not None:
            fields["status"] = VariationStatus(status)
        if fields.get("operation_type") is not None:
            fields["operation_type"] = OperationType.parse(fields["operation_type"])

        updates = _merge_fields(_VARIATION_FIELDS, fields)
        current = self.state.variations.get(variation_id)
        if current is None:
            record = Variation(id=variation_id, **updates)
            self.state.variations[variation_id] = record
            self._changed("variations")
            return record

        if current.status.is_terminal and "status" in updates and updates["status"] != current.status:
            logger.debug(
                "Dropping stale variation update",
                variation_id=variation_id,
                current=current.status,
                incoming=updates["status"],
            )
            return None

        merged = replace(current, **updates)
        if merged != current:
            self.state.variations[variation_id] = merged
            self._changed("variations")
        return merged

    def upsert_batch(self, batch_id: int | str, **fields: Any) -> Batch | None:
        """Insert or merge a batch under the same rules as variations."""
        status = fields.get("status")
        if status is not None:
            fields["status"] = BatchStatus(status)
        if fields.get("operation_type") is not None:
            fields["operation_type"] = OperationType.parse(fields["operation_type"])

        updates = _merge_fields(_BATCH_FIELDS, fields)
        current = self.state.batches.get(batch_id)
        if current is None:
            record = Batch(id=batch_id, **updates)
            self.state.batches[batch_id] = record
            self._changed("batches")
            return record

        if current.status.is_terminal and "status" in updates and updates["status"] != current.status:
            logger.debug("Dropping stale batch update", batch_id=batch_id, current=current.status)
            return None

        merged = replace(current, **updates)
        if merged != current:
            self.state.batches[batch_id] = merged
            self._changed("batches")
        return merged

    def add_placeholders(
        self,
        batch_id: int | str,
        variation_ids: Iterable[int | str],
        *,
        operation_type: OperationType | None = None,
        original_base_image_id: int | str | None = None,
    ) -> None:
        """Record a just-enqueued batch and its PROCESSING variations.

        No status is passed, so a batch or variation already finished by an
        earlier push event keeps its terminal state.
        """
        self.upsert_batch(batch_id, operation_type=operation_type, original_base_image_id=original_base_image_id)
        for number, variation_id in enumerate(variation_ids, start=1):
            self.upsert_variation(
                variation_id,
                batch_id=batch_id,
                variation_number=number,
                operation_type=operation_type,
                original_base_image_id=original_base_image_id,
            )

    def apply_refresh(self, variations: Iterable[Variation]) -> int:
        """Merge a pull-based listing. Returns how many records were accepted."""
        accepted = 0
        for variation in variations:
            if self.upsert_variation(variation.id, **_record_updates(variation, _VARIATION_FIELDS)) is not None:
                accepted += 1
        return accepted

    def apply_snapshot(self, batch: Batch, variations: Iterable[Variation]) -> tuple[Batch | None, list[Variation]]:
        """Merge an authoritative batch snapshot. Returns the records that were accepted."""
        merged = self.upsert_batch(batch.id, **_record_updates(batch, _BATCH_FIELDS))
        accepted = []
        for variation in variations:
            record = self.upsert_variation(variation.id, **_record_updates(variation, _VARIATION_FIELDS))
            if record is not None:
                accepted.append(record)
        return merged, accepted

    def variations_in_batch(self, batch_id: int | str) -> list[Variation]:
        return [v for v in self.state.variations.values() if v.batch_id == batch_id]

    def batch_settled(self, batch_id: int | str) -> bool:
        """True when every variation the batch is known to have is terminal."""
        variations = self.variations_in_batch(batch_id)
        batch = self.state.batches.get(batch_id)
        if batch is not None and batch.total_variations and len(variations) < batch.total_variations:
            return False
        return all(v.status.is_terminal for v in variations)

    # -------------------------------------------------------------------------
    # Account and generation flags
    # -------------------------------------------------------------------------

    def set_credits(self, credits: int | None) -> None:
        # Server is authoritative; never computed locally
        if credits is None or credits == self.state.credits:
            return
        self.state.credits = credits
        self._changed("credits")

    def track_batch(self, batch_id: int | str | None) -> None:
        self.state.is_generating = True
        self.state.spinner_visible = True
        self.state.tracked_batch_id = batch_id
        self._changed("generating")

    def stop_generating(self) -> None:
        if not self.state.is_generating and not self.state.spinner_visible and self.state.tracked_batch_id is None:
            return
        self.state.is_generating = False
        self.state.spinner_visible = False
        self.state.tracked_batch_id = None
        self._changed("generating")

    def hide_spinner(self) -> None:
        """Stop waiting visually; later events still update state."""
        if self.state.spinner_visible:
            self.state.spinner_visible = False
            self._changed("generating")

    def is_tracked(self, batch_id: int | str | None) -> bool:
        tracked = self.state.tracked_batch_id
        return self.state.is_generating and (tracked is None or batch_id is None or tracked == batch_id)

    # -------------------------------------------------------------------------
    # Selection and edit panel
    # -------------------------------------------------------------------------

    def select(
        self,
        image_id: int | str,
        *,
        kind: SelectionKind = SelectionKind.GENERATED,
        base_input_image_id: int | str | None = None,
        clear_overlays: bool = False,
    ) -> None:
        self.state.selection = Selection(image_id=image_id, kind=kind, base_input_image_id=base_input_image_id)
        if clear_overlays:
            self.state.overlay_objects = []
        self._changed("selection")

    def add_overlay(self, obj: dict[str, Any]) -> None:
        self.state.overlay_objects.append(obj)
        self._changed("overlays")

    def set_prompt(self, prompt: str | None) -> None:
        if prompt is None:
            return
        self.state.prompt = prompt
        self._changed("prompt")

    # -------------------------------------------------------------------------
    # Masks
    # -------------------------------------------------------------------------

    def masks_started(self, input_image_id: int | str | None) -> None:
        self.state.masks = MaskState(status=MaskStatus.PROCESSING, input_image_id=input_image_id)
        self._changed("masks")

    def masks_completed(self, input_image_id: int | str | None, mask_count: int, masks: list[dict[str, Any]]) -> None:
        self.state.masks = MaskState(
            status=MaskStatus.COMPLETED,
            input_image_id=input_image_id,
            mask_count=mask_count,
            masks=list(masks),
        )
        self._changed("masks")

    def masks_failed(self, input_image_id: int | str | None, error: str | None) -> None:
        self.state.masks = MaskState(status=MaskStatus.FAILED, input_image_id=input_image_id, error=error)
        self._changed("masks")

    # -------------------------------------------------------------------------
    # Connection
    # -------------------------------------------------------------------------

    def set_connection_unstable(self, unstable: bool) -> None:
        if self.state.connection_unstable != unstable:
            self.state.connection_unstable = unstable
            self._changed("connection")
