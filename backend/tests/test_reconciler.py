"""Tests for the state reconciler's upsert and terminal-state rules."""

from dataclasses import replace

import pytest

from genrelay.models.enums import BatchStatus, OperationType, SelectionKind, VariationStatus
from genrelay.models.state import Batch, Variation


class TestVariationUpsert:
    def test_insert_appends(self, reconciler):
        reconciler.upsert_variation(1, batch_id=10, status="PROCESSING")
        reconciler.upsert_variation(2, batch_id=10, status="PROCESSING")
        assert list(reconciler.state.variations) == [1, 2]

    def test_applying_completed_twice_is_idempotent(self, reconciler):
        fields = {"status": VariationStatus.COMPLETED, "batch_id": 10, "image_url": "https://cdn/1.png"}
        reconciler.upsert_variation(1, **fields)
        once = replace(reconciler.state.variations[1])

        reconciler.upsert_variation(1, **fields)

        assert reconciler.state.variations[1] == once
        assert len(reconciler.state.variations) == 1

    @pytest.mark.parametrize("terminal", [VariationStatus.COMPLETED, VariationStatus.FAILED])
    def test_terminal_status_never_regresses(self, reconciler, terminal):
        reconciler.upsert_variation(1, status=terminal, image_url="https://cdn/1.png")

        assert reconciler.upsert_variation(1, status=VariationStatus.PROCESSING, image_url="stale") is None
        assert reconciler.state.variations[1].status is terminal
        assert reconciler.state.variations[1].image_url == "https://cdn/1.png"

    def test_completed_before_started(self, reconciler):
        reconciler.upsert_variation(1, status=VariationStatus.COMPLETED, image_url="https://cdn/1.png")
        reconciler.upsert_variation(1, status=VariationStatus.PROCESSING)

        assert reconciler.state.variations[1].status is VariationStatus.COMPLETED

    def test_none_never_clears_known_fields(self, reconciler):
        reconciler.upsert_variation(1, thumbnail_url="https://cdn/t1.png", variation_number=1)
        reconciler.upsert_variation(1, thumbnail_url=None, image_url="https://cdn/1.png")

        record = reconciler.state.variations[1]
        assert record.thumbnail_url == "https://cdn/t1.png"
        assert record.image_url == "https://cdn/1.png"
        assert record.variation_number == 1

    def test_same_terminal_status_merges_new_fields(self, reconciler):
        reconciler.upsert_variation(1, status=VariationStatus.COMPLETED)
        reconciler.upsert_variation(1, status=VariationStatus.COMPLETED, processed_image_url="https://cdn/p1.png")
        assert reconciler.state.variations[1].processed_image_url == "https://cdn/p1.png"

    def test_operation_type_is_parsed(self, reconciler):
        reconciler.upsert_variation(1, operation_type="INPAINT")
        assert reconciler.state.variations[1].operation_type is OperationType.INPAINT

    def test_unknown_field_is_rejected(self, reconciler):
        with pytest.raises(TypeError):
            reconciler.upsert_variation(1, colour="red")


class TestBatchUpsert:
    def test_terminal_batch_keeps_counts(self, reconciler):
        reconciler.upsert_batch(10, status="COMPLETED", successful_variations=3)
        assert reconciler.upsert_batch(10, status="PROCESSING") is None
        assert reconciler.state.batches[10].status is BatchStatus.COMPLETED
        assert reconciler.state.batches[10].successful_variations == 3

    def test_placeholders_do_not_regress_finished_records(self, reconciler):
        reconciler.upsert_variation(101, status=VariationStatus.COMPLETED, batch_id=10)
        reconciler.upsert_batch(10, status=BatchStatus.COMPLETED)

        reconciler.add_placeholders(10, [101, 102], operation_type=OperationType.CREATE)

        assert reconciler.state.batches[10].status is BatchStatus.COMPLETED
        assert reconciler.state.variations[101].status is VariationStatus.COMPLETED
        assert reconciler.state.variations[102].status is VariationStatus.PROCESSING
        assert reconciler.state.variations[102].variation_number == 2

    def test_batch_settled_needs_every_variation_terminal(self, reconciler):
        reconciler.add_placeholders(10, [101, 102], operation_type=OperationType.REFINE)
        reconciler.upsert_variation(101, status=VariationStatus.COMPLETED)
        assert not reconciler.batch_settled(10)

        reconciler.upsert_variation(102, status=VariationStatus.FAILED)
        assert reconciler.batch_settled(10)
        assert [v.id for v in reconciler.variations_in_batch(10)] == [101, 102]

    def test_batch_settled_respects_expected_total(self, reconciler):
        reconciler.upsert_batch(10, total_variations=3)
        reconciler.upsert_variation(101, batch_id=10, status=VariationStatus.COMPLETED)
        assert not reconciler.batch_settled(10)


class TestRefresh:
    def test_refresh_goes_through_terminal_rule(self, reconciler):
        reconciler.upsert_variation(1, status=VariationStatus.FAILED)
        accepted = reconciler.apply_refresh(
            [
                Variation(id=1, status=VariationStatus.PROCESSING),
                Variation(id=2, status=VariationStatus.COMPLETED, image_url="https://cdn/2.png"),
            ]
        )

        assert accepted == 1
        assert reconciler.state.variations[1].status is VariationStatus.FAILED
        assert reconciler.state.variations[2].image_url == "https://cdn/2.png"

    def test_snapshot_merges_batch_and_variations(self, reconciler):
        reconciler.add_placeholders(10, [101, 102], operation_type=OperationType.CREATE)
        reconciler.upsert_variation(102, status=VariationStatus.FAILED)

        batch, accepted = reconciler.apply_snapshot(
            Batch(id=10, status=BatchStatus.PARTIALLY_COMPLETED, successful_variations=1),
            [
                Variation(id=101, batch_id=10, status=VariationStatus.COMPLETED, image_url="https://cdn/101.png"),
                Variation(id=102, batch_id=10, status=VariationStatus.PROCESSING),
            ],
        )

        assert batch.status is BatchStatus.PARTIALLY_COMPLETED
        assert batch.operation_type is OperationType.CREATE
        assert [v.id for v in accepted] == [101]
        assert reconciler.state.variations[101].operation_type is OperationType.CREATE
        assert reconciler.state.variations[102].status is VariationStatus.FAILED


class TestSlices:
    def test_credits_overwrite(self, reconciler):
        reconciler.set_credits(10)
        reconciler.set_credits(3)
        reconciler.set_credits(None)
        assert reconciler.state.credits == 3

    def test_select_can_clear_overlays(self, reconciler):
        reconciler.add_overlay({"type": "rect"})
        reconciler.select(5, kind=SelectionKind.GENERATED)
        assert reconciler.state.overlay_objects == [{"type": "rect"}]

        reconciler.select(6, clear_overlays=True)
        assert reconciler.state.overlay_objects == []
        assert reconciler.state.selection.image_id == 6

    def test_generating_flags(self, reconciler):
        reconciler.track_batch(10)
        assert reconciler.is_tracked(10)
        assert not reconciler.is_tracked(11)

        reconciler.hide_spinner()
        assert reconciler.state.is_generating
        assert not reconciler.state.spinner_visible

        reconciler.stop_generating()
        assert not reconciler.state.is_generating
        assert reconciler.state.tracked_batch_id is None

    def test_change_notifications(self, reconciler):
        changes: list[str] = []
        reconciler.on_change = changes.append

        reconciler.upsert_variation(1, status=VariationStatus.COMPLETED)
        reconciler.upsert_variation(1, status=VariationStatus.COMPLETED)
        reconciler.set_credits(5)
        reconciler.masks_failed(12, "no objects")

        assert changes == ["variations", "credits", "masks"]
