# ruff: noqa: E402
"""Live connection runner for QR pairing and a test send.

Usage:
    python examples/live_connect.py

Optional env:
    KASWA_AUTH_DIR=auth_info
    KASWA_BRIDGE_URL=ws://127.0.0.1:8787/ws
    KASWA_TEST_NUMBER=0812xxxx
    KASWA_TEST_TEXT=hello from kaswa
"""

from __future__ import annotations

import asyncio
import os
import sys
from pathlib import Path

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from kaswa.client.manager import ConnectionManager
from kaswa.core.entities import ConnectionState
from kaswa.infra.storage_files import MultiFileAuthStore
from kaswa.utils.jid import to_user_jid
from kaswa.utils.qr import print_qr_terminal, render_qr_data_uri
from kaswa.utils.rate_limiter import RateLimiter


def _render_and_print(payload: str) -> str | None:
    print("\n=== SCAN THIS QR CODE ===")
    print_qr_terminal(payload)
    print("==========================\n")
    return render_qr_data_uri(payload)


async def main() -> None:
    store = MultiFileAuthStore(os.getenv("KASWA_AUTH_DIR", "auth_info"))
    manager = ConnectionManager(
        store,
        RateLimiter(),
        qr_renderer=_render_and_print,
        bridge_url=os.getenv("KASWA_BRIDGE_URL", "ws://127.0.0.1:8787/ws"),
    )
    opened = asyncio.Event()

    def _on_state(state: ConnectionState) -> None:
        print(f"[connection] state={state.value}")
        if state is ConnectionState.OPEN:
            opened.set()

    manager.on_connection_update(_on_state)
    manager.on_message(lambda message: print(f"[incoming] from={message.from_jid} text={message.text!r}"))

    attempt = await manager.connect()
    if not attempt.allowed:
        print(f"Rate limited; retry in {attempt.remaining_minutes} minute(s).")
        return

    try:
        await opened.wait()
        number = os.getenv("KASWA_TEST_NUMBER")
        if number:
            text = os.getenv("KASWA_TEST_TEXT", "hello from kaswa")
            sent = await manager.send_message(to_user_jid(number), text)
            print(f"send_message -> {sent}")
        else:
            print("Set KASWA_TEST_NUMBER to run a test send.")

        print("Listening for messages. Ctrl+C to stop.")
        while manager.is_ready():
            await asyncio.sleep(1)
        print("Connection closed; reconnect manually.")
    finally:
        await manager.logout()


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass
