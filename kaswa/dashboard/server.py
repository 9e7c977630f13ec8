from __future__ import annotations

import argparse
import os
from typing import Any, Protocol

from flask import Flask, jsonify, request

from kaswa.core.entities import BroadcastResult
from kaswa.core.errors import NotConnectedError
from kaswa.infra.logger import get_logger
from kaswa.utils.jid import to_user_jid

from .runtime import GatewayRuntime
from .state import EVENT_KINDS


class GatewayRuntimeLike(Protocol):
    config: dict[str, Any]

    def status(self) -> dict[str, Any]: ...

    def connect(self, identifier: str = ...) -> dict[str, Any]: ...

    def reset_and_reconnect(self, identifier: str = ...) -> dict[str, Any]: ...

    def restore(self) -> dict[str, Any]: ...

    def send_one(self, to_jid: str, text: str) -> bool: ...

    def broadcast(self, jids: list[str], text: str) -> BroadcastResult: ...

    def disconnect(self) -> dict[str, Any]: ...

    def reset_ban(self) -> None: ...

    def list_events(self, kind: str | None = ..., limit: int | None = ...) -> list[dict[str, Any]]: ...

    def list_deliveries(self, limit: int = ..., status: str | None = ...) -> list[dict[str, Any]]: ...

    def list_contacts(self) -> list[dict[str, Any]]: ...


def _client_id() -> str:
    # single-operator deployments share one limiter bucket
    return request.headers.get("X-Operator-Id") or "default"


def create_app(*, testing: bool = False, runtime: GatewayRuntimeLike | None = None) -> Flask:
    app = Flask(__name__)
    app.config["TESTING"] = testing
    gateway = runtime or GatewayRuntime(
        auth_dir=os.getenv("KASWA_AUTH_DIR", "auth_info"),
        delivery_db=os.getenv("KASWA_DELIVERY_DB", "kaswa_deliveries.db"),
        bridge_url=os.getenv("KASWA_BRIDGE_URL", "ws://127.0.0.1:8787/ws"),
    )
    app.config["GATEWAY_RUNTIME"] = gateway
    country_code = str(gateway.config.get("country_code", "62"))

    @app.get("/api/health")
    def health():
        return jsonify({"status": "ok", "connection": gateway.status()})

    @app.get("/api/whatsapp/status")
    def status():
        try:
            return jsonify({"success": True, **gateway.status()})
        except Exception as exc:
            return jsonify(
                {
                    "success": False,
                    "qrCode": None,
                    "connectionState": "closed",
                    "isConnected": False,
                    "error": f"Failed to get status: {exc}",
                }
            ), 500

    @app.post("/api/whatsapp/connect")
    def connect():
        try:
            result = gateway.connect(_client_id())
        except Exception as exc:
            return jsonify({"success": False, "error": f"Failed to start WhatsApp connection: {exc}"}), 500
        if result.get("rateLimited"):
            return jsonify(result), 429
        result["message"] = "QR code ready to scan" if result.get("qrCode") else "Preparing connection..."
        return jsonify(result)

    @app.post("/api/whatsapp/reset-and-reconnect")
    def reset_and_reconnect():
        try:
            result = gateway.reset_and_reconnect(_client_id())
        except Exception as exc:
            return jsonify({"success": False, "error": f"Failed to reset WhatsApp session: {exc}"}), 500
        if result.get("rateLimited"):
            return jsonify(result), 429
        return jsonify(result)

    @app.post("/api/whatsapp/restore-session")
    def restore_session():
        try:
            result = gateway.restore()
        except Exception as exc:
            return jsonify({"success": False, "error": f"Failed to restore WhatsApp session: {exc}"}), 500
        if not result.get("restored"):
            return jsonify({"success": False, "error": "No stored session. A new QR pairing is required.", **result}), 404
        if not result.get("isConnected"):
            return jsonify({"success": False, "error": "Session restore started but is not connected yet.", **result})
        return jsonify({"success": True, "message": "Session restored.", **result})

    @app.post("/api/whatsapp/send-message")
    def send_message():
        data = request.get_json(silent=True) or {}
        raw_to = str(data.get("to") or "").strip()
        text = str(data.get("message") or data.get("text") or "").strip()
        if not raw_to or not text:
            return jsonify({"success": False, "error": "`to` and `message` are required."}), 400

        try:
            to_jid = to_user_jid(raw_to, country_code)
        except ValueError as exc:
            return jsonify({"success": False, "error": str(exc)}), 400

        try:
            sent = gateway.send_one(to_jid, text)
        except NotConnectedError:
            return jsonify({"success": False, "error": "WhatsApp is not connected. Scan the QR code first."}), 409
        except Exception as exc:
            return jsonify({"success": False, "error": f"Send failed: {exc}"}), 500

        if not sent:
            return jsonify({"success": False, "error": "Failed to send WhatsApp message", "to": to_jid}), 502
        return jsonify({"success": True, "to": to_jid, "status": "sent"})

    @app.post("/api/whatsapp/broadcast")
    def broadcast():
        data = request.get_json(silent=True) or {}
        contacts = data.get("contacts")
        text = str(data.get("message") or data.get("text") or "").strip()
        if not isinstance(contacts, list) or not contacts or not text:
            return jsonify({"success": False, "error": "`contacts` (non-empty list) and `message` are required."}), 400

        try:
            jids = [to_user_jid(str(contact), country_code) for contact in contacts]
        except ValueError as exc:
            return jsonify({"success": False, "error": str(exc)}), 400

        if not gateway.status().get("isConnected"):
            return jsonify({"success": False, "error": "WhatsApp is not connected. Scan the QR code first."}), 409

        try:
            result = gateway.broadcast(jids, text)
        except Exception as exc:
            return jsonify({"success": False, "error": f"Broadcast failed: {exc}"}), 500
        return jsonify({"success": True, **result.to_dict(), "failedDestinations": result.failed_destinations})

    @app.post("/api/whatsapp/logout")
    def logout():
        try:
            state = gateway.disconnect()
        except Exception as exc:
            return jsonify({"success": False, "error": f"Failed to disconnect: {exc}"}), 500
        return jsonify({"success": True, "message": "WhatsApp disconnected.", **state})

    @app.post("/api/whatsapp/reset-ban")
    def reset_ban():
        try:
            gateway.reset_ban()
        except Exception as exc:
            return jsonify({"success": False, "error": f"Failed to reset rate limits: {exc}"}), 500
        return jsonify(
            {
                "success": True,
                "message": "Rate limits and stored session were reset. Try again in a few minutes.",
            }
        )

    @app.get("/api/whatsapp/events")
    def events():
        kind = request.args.get("kind") or None
        if kind is not None and kind not in EVENT_KINDS:
            return jsonify({"success": False, "error": f"Unknown event kind: {kind}"}), 400
        limit = request.args.get("limit", type=int)
        return jsonify({"events": gateway.list_events(kind=kind, limit=limit)})

    @app.get("/api/whatsapp/contacts")
    def contacts():
        return jsonify({"contacts": gateway.list_contacts()})

    @app.get("/api/whatsapp/deliveries")
    def deliveries():
        limit = request.args.get("limit", default=50, type=int)
        status = request.args.get("status") or None
        return jsonify({"deliveries": gateway.list_deliveries(limit, status=status)})

    return app


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run the kaswa WhatsApp gateway API.")
    parser.add_argument("--host", default="127.0.0.1")
    parser.add_argument("--port", default=8080, type=int)
    parser.add_argument("--debug", action="store_true")
    return parser.parse_args()


def main() -> None:
    args = _parse_args()
    get_logger("kaswa")
    app = create_app()
    app.run(host=args.host, port=args.port, debug=args.debug, use_reloader=False)


if __name__ == "__main__":
    main()
