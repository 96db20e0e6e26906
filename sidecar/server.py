import logging
import os
import socket

import uvicorn

SIDECAR_HOST = os.getenv("SIDECAR_HOST", "127.0.0.1")
LOG_LEVEL = os.getenv("LOG_LEVEL", "warning").lower()


def configure_logging() -> None:
    logging.basicConfig(
        level=LOG_LEVEL.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def find_free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind((SIDECAR_HOST, 0))
        return sock.getsockname()[1]


def start_server(app, port: int):
    # The desktop shell reads the port from the first line of stdout
    print(f"PORT:{port}", flush=True)
    uvicorn.run(
        app,
        host=SIDECAR_HOST,
        port=port,
        log_level=LOG_LEVEL,
    )
