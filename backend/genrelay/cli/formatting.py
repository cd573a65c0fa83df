"""Terminal rendering of client state slices for `genrelay watch`."""

import json
from dataclasses import asdict
from typing import Any

import click
from pygments import highlight
from pygments.formatters import Terminal256Formatter
from pygments.lexers import JsonLexer

from genrelay.models.state import ClientState

FORMATTER = Terminal256Formatter(style="monokai")

_STATUS_COLORS = {
    "COMPLETED": "green",
    "PARTIALLY_COMPLETED": "green",
    "FAILED": "red",
}


def highlight_json(data: Any) -> str:
    """Syntax highlight JSON for terminal output."""
    if not isinstance(data, str):
        data = json.dumps(data, indent=2, default=str)
    return highlight(data, JsonLexer(), FORMATTER).rstrip()


def style_header(text: str) -> str:
    return click.style(text, fg="yellow", bold=True)


def style_code(text: str) -> str:
    return click.style(text, fg="cyan")


def style_status(status: str) -> str:
    upper = str(status).upper()
    return click.style(str(status), fg=_STATUS_COLORS.get(upper, "blue"), bold=upper == "FAILED")


def slice_data(state: ClientState, slice_name: str) -> Any:
    """JSON-ready view of one state slice, keyed the way the reconciler names it."""
    if slice_name == "variations":
        return [asdict(v) for v in state.variations.values()]
    if slice_name == "batches":
        return [asdict(b) for b in state.batches.values()]
    if slice_name == "selection":
        return asdict(state.selection) if state.selection is not None else None
    if slice_name == "masks":
        return asdict(state.masks)
    if slice_name == "generating":
        return {
            "isGenerating": state.is_generating,
            "spinnerVisible": state.spinner_visible,
            "trackedBatchId": state.tracked_batch_id,
        }
    if slice_name == "overlays":
        return state.overlay_objects
    if slice_name == "connection":
        return {"connectionUnstable": state.connection_unstable}
    return {slice_name: getattr(state, slice_name, None)}


def _summary_lines(state: ClientState, slice_name: str) -> list[str]:
    if slice_name == "variations":
        return [
            f"#{v.id} batch={v.batch_id} {style_status(v.status)} {v.image_url or ''}".rstrip()
            for v in state.variations.values()
        ]
    if slice_name == "batches":
        return [f"batch {b.id} {b.operation_type or '?'} {style_status(b.status)}" for b in state.batches.values()]
    if slice_name == "selection":
        if state.selection is None:
            return ["nothing selected"]
        return [f"selected: {state.selection.image_id} ({state.selection.kind})"]
    if slice_name == "generating":
        return [f"generating={state.is_generating} spinner={state.spinner_visible} batch={state.tracked_batch_id}"]
    if slice_name == "masks":
        masks = state.masks
        return [f"masks: {masks.status} count={masks.mask_count} error={masks.error}"]
    if slice_name == "overlays":
        return [f"overlays: {len(state.overlay_objects)}"]
    if slice_name == "connection":
        return [f"connection unstable: {state.connection_unstable}"]
    return [f"{slice_name}: {getattr(state, slice_name, None)}"]


def render_slice(state: ClientState, slice_name: str, *, as_json: bool = False) -> str:
    """Header plus either a one-line-per-record summary or highlighted JSON."""
    header = style_header(f"[{slice_name}]")
    if as_json:
        return f"{header}\n{highlight_json(slice_data(state, slice_name))}"
    return "\n".join([header, *(f"  {line}" for line in _summary_lines(state, slice_name))])
