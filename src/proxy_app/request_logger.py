import logging
from datetime import datetime
from typing import Optional, Tuple


def log_request_to_console(
    url: str, client_info: Optional[Tuple[str, int]], request_data: dict
):
    """
    Logs a concise, single-line summary of an incoming request to the console.
    """
    time_str = datetime.now().strftime("%H:%M")
    model = request_data.get("model") or {}
    model_id = model.get("id", "N/A") if isinstance(model, dict) else str(model)
    messages = request_data.get("messages") or []
    key_source = "client key" if request_data.get("key") else "pool key"
    host, port = client_info if client_info else ("unknown", 0)

    log_message = (
        f"{time_str} - {host}:{port} - model: {model_id}, messages: {len(messages)}, "
        f"{key_source} - {url}"
    )
    logging.info(log_message)
