"""Default connection, pacing and rate-limit constants."""

DEFAULT_MANAGER_CONFIG = {
    "auth_dir": "auth_info",
    "bridge_url": "ws://127.0.0.1:8787/ws",
    "browser": ("Kas Kelas Gateway", "Chrome", "1.0.0"),
    "country_code": "62",
    "connect_timeout": 20.0,
    "send_timeout": 60.0,
    "qr_timeout": 60.0,
    "broadcast_delay": 2.0,
    "reconnect_delay": 1.0,
    "qr_wait_timeout": 10.0,
}

DEFAULT_IDENTIFIER = "default"

# (max count, window in milliseconds)
QR_GENERATION_POLICY = (3, 60 * 60 * 1000)
CONNECTION_POLICY = (5, 30 * 60 * 1000)
