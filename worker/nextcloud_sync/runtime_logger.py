ALLOWED_LOG_TYPES = {"INFO", "WARN", "ERROR"}
ALLOWED_ACTORS = {"FLASK_API", "SCHEDULER", "CRON", "BATCH", "CLI", "NEXTCLOUD", "TRACKING", "DB_CONN"}
FALLBACK_ACTOR = "TRACKING"
MAX_MESSAGE_LENGTH = 600


def _pick(value, allowed, fallback: str) -> str:
    value = (value or "").upper()
    return value if value in allowed else fallback


def _sanitize_text(text: object) -> str:
    # Nextcloud error messages can span lines; keep one log line per event.
    message = " ".join(str(text if text is not None else "").splitlines()).strip()
    if not message:
        return "-"
    if len(message) > MAX_MESSAGE_LENGTH:
        return message[: MAX_MESSAGE_LENGTH - 3] + "..."
    return message


def format_line(log_type: str, actor: str, text: object) -> str:
    level = _pick(log_type, ALLOWED_LOG_TYPES, "INFO")
    source = _pick(actor, ALLOWED_ACTORS, FALLBACK_ACTOR)
    return f"[{level}] [{source}]: {_sanitize_text(text)}"


def emit(log_type: str, actor: str, text: object):
    print(format_line(log_type, actor, text), flush=True)
