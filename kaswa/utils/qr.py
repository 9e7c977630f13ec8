"""Pairing payload to QR image rendering."""

from __future__ import annotations

import base64
import logging

import qrcode

logger = logging.getLogger(__name__)


def _qr_svg(payload: str) -> str:
    qr = qrcode.QRCode(border=1)
    qr.add_data(payload)
    qr.make(fit=True)
    matrix = qr.get_matrix()
    size = len(matrix)
    cells: list[str] = []
    for y, row in enumerate(matrix):
        for x, is_dark in enumerate(row):
            if is_dark:
                cells.append(f"<rect x='{x}' y='{y}' width='1' height='1'/>")
    return (
        f"<svg xmlns='http://www.w3.org/2000/svg' viewBox='0 0 {size} {size}' shape-rendering='crispEdges'>"
        "<rect width='100%' height='100%' fill='white'/>"
        "<g fill='black'>"
        + "".join(cells)
        + "</g></svg>"
    )


def render_qr_data_uri(payload: str) -> str | None:
    """Render a pairing payload as an SVG data URI, or ``None`` when it cannot be rendered."""
    if not isinstance(payload, str) or not payload:
        logger.warning("empty pairing payload; no QR available")
        return None
    try:
        svg = _qr_svg(payload)
    except Exception:
        logger.exception("failed to render pairing QR code")
        return None
    encoded = base64.b64encode(svg.encode("utf-8")).decode("ascii")
    return f"data:image/svg+xml;base64,{encoded}"


def print_qr_terminal(payload: str) -> None:
    qr = qrcode.QRCode(border=1)
    qr.add_data(payload)
    qr.make(fit=True)
    qr.print_ascii(invert=True)
