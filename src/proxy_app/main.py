import os
import sys
import json
import time
import argparse
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncGenerator, List, Optional

import colorlog
import httpx
from dotenv import load_dotenv
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import Response, StreamingResponse
from fastapi.security import APIKeyHeader
from pydantic import BaseModel

_root_dir = Path.cwd()

# Load .env before anything reads the environment (module-level app, PROXY_API_KEY, RELAY_LOG_DIR)
load_dotenv(_root_dir / ".env")

from key_relay import (
    ChatRequest,
    InvalidKeyServerAccess,
    NoCredentialsAvailable,
    RelayClient,
    RelaySettings,
    RelayStream,
    StreamParseError,
    UpstreamAuthError,
    UpstreamConnectionError,
    UpstreamError,
)
from proxy_app.request_logger import log_request_to_console


# --- Pydantic Models ---
class ModelRef(BaseModel):
    id: str
    name: Optional[str] = None


class ChatMessage(BaseModel):
    role: str
    content: str


class ChatBody(BaseModel):
    model: ModelRef
    messages: List[ChatMessage]
    key: Optional[str] = ""
    prompt: Optional[str] = ""
    temperature: float = 1.0


class ModelsBody(BaseModel):
    key: Optional[str] = ""


class ModelEntry(BaseModel):
    id: str
    name: str


# --- Logging Configuration ---
class RelayDebugFilter(logging.Filter):
    """Lets only DEBUG records from key_relay through to the debug file."""

    def filter(self, record):
        return record.levelno == logging.DEBUG and record.name.startswith("key_relay")


def configure_logging(log_dir: Path):
    log_dir.mkdir(exist_ok=True)

    # Colored console output (INFO and above)
    console_handler = colorlog.StreamHandler(sys.stdout)
    console_handler.setLevel(logging.INFO)
    console_handler.setFormatter(
        colorlog.ColoredFormatter(
            "%(log_color)s%(message)s",
            log_colors={
                "DEBUG": "cyan",
                "INFO": "green",
                "WARNING": "yellow",
                "ERROR": "red",
                "CRITICAL": "red,bg_white",
            },
        )
    )

    info_file_handler = logging.FileHandler(log_dir / "proxy.log", encoding="utf-8")
    info_file_handler.setLevel(logging.INFO)
    info_file_handler.setFormatter(
        logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
    )

    debug_file_handler = logging.FileHandler(log_dir / "proxy_debug.log", encoding="utf-8")
    debug_file_handler.setLevel(logging.DEBUG)
    debug_file_handler.setFormatter(
        logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
    )
    debug_file_handler.addFilter(RelayDebugFilter())

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)
    root_logger.addHandler(info_file_handler)
    root_logger.addHandler(console_handler)
    root_logger.addHandler(debug_file_handler)

    # Silence noisy loggers
    logging.getLogger("uvicorn").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


# --- Dependencies ---
api_key_header = APIKeyHeader(name="Authorization", auto_error=False)


def get_relay_client(request: Request) -> RelayClient:
    """Dependency to get the relay client instance from the app state."""
    return request.app.state.relay_client


async def verify_api_key(request: Request, auth: str = Depends(api_key_header)):
    """Dependency to verify the proxy API key (open access when PROXY_API_KEY is unset)."""
    proxy_api_key = request.app.state.proxy_api_key
    if not proxy_api_key:
        return auth
    if not auth or auth != f"Bearer {proxy_api_key}":
        raise HTTPException(status_code=401, detail="Invalid or missing API Key")
    return auth


def _upstream_failure_response(e: UpstreamError) -> Response:
    """
    Maps relay failures to responses: a rejected credential passes the upstream
    error body through with status 500, anything else becomes a bare 500 (or 502
    when the upstream could not be reached).
    """
    if isinstance(e, UpstreamAuthError):
        logging.error(f"Upstream rejected the credential(s): {e}")
        return Response(
            content=e.body or json.dumps({"error": {"message": str(e)}}),
            status_code=500,
            media_type="application/json",
        )
    if isinstance(e, UpstreamConnectionError):
        logging.error(f"Upstream unreachable: {e}")
        return Response(content="Bad Gateway", status_code=502, media_type="text/plain")
    logging.error(f"Upstream API returned an error {e.status_code}: {e.body}")
    return Response(content="Error", status_code=500, media_type="text/plain")


CREDENTIAL_SOURCE_ERRORS = (InvalidKeyServerAccess, OSError, ValueError, httpx.HTTPError)


def _credential_source_failure_response(e: Exception) -> Response:
    logging.error(f"Could not load credentials: {type(e).__name__}: {e}")
    return Response(content="Error", status_code=500, media_type="text/plain")


async def relay_stream_wrapper(
    request: Request, stream: RelayStream
) -> AsyncGenerator[bytes, None]:
    """
    Forwards the relay stream to the client and always releases it, whether the
    stream finished, failed mid-way or the client went away.
    """
    try:
        async for chunk in stream:
            if await request.is_disconnected():
                logging.warning("Client disconnected, stopping stream.")
                break
            yield chunk
    except (StreamParseError, UpstreamError) as e:
        # Headers are already sent; the response simply ends here.
        logging.error(f"Stream for model {stream.model} ended in error: {type(e).__name__}: {e}")
    finally:
        await stream.aclose()


def create_app(
    settings: Optional[RelaySettings] = None,
    relay_client: Optional[RelayClient] = None,
    proxy_api_key: Optional[str] = None,
) -> FastAPI:
    """Builds the FastAPI app; the RelayClient lives for the app's lifespan."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        active_client = relay_client or RelayClient(settings or RelaySettings.from_env())
        app.state.relay_client = active_client
        logging.info(f"Relay client ready (credential source: {active_client.pool.source}).")
        yield
        await active_client.close()
        logging.info("Relay client closed.")

    app = FastAPI(lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.proxy_api_key = (
        proxy_api_key if proxy_api_key is not None else os.getenv("PROXY_API_KEY")
    )
    app.state.enable_request_logging = False

    @app.get("/")
    def read_root():
        return {"Status": "Key Relay is running"}

    @app.post("/api/chat")
    async def chat(
        body: ChatBody,
        request: Request,
        client: RelayClient = Depends(get_relay_client),
        _=Depends(verify_api_key),
    ):
        if request.app.state.enable_request_logging:
            log_request_to_console(
                url=str(request.url),
                client_info=(request.client.host, request.client.port) if request.client else None,
                request_data=body.model_dump(),
            )

        chat_request = ChatRequest(
            model=body.model.id,
            messages=[message.model_dump() for message in body.messages],
            system_prompt=body.prompt or "",
            temperature=body.temperature,
        )
        try:
            stream = await client.relay(chat_request, credential_override=body.key or None)
        except NoCredentialsAvailable as e:
            logging.error(f"No credentials available for model {body.model.id}: {e}")
            raise HTTPException(status_code=503, detail=str(e))
        except UpstreamError as e:
            return _upstream_failure_response(e)
        except CREDENTIAL_SOURCE_ERRORS as e:
            return _credential_source_failure_response(e)

        return StreamingResponse(
            relay_stream_wrapper(request, stream),
            media_type="text/plain; charset=utf-8",
        )

    @app.post("/api/models", response_model=List[ModelEntry])
    async def list_models(
        body: ModelsBody,
        client: RelayClient = Depends(get_relay_client),
        _=Depends(verify_api_key),
    ):
        try:
            return await client.list_models(credential_override=body.key or None)
        except NoCredentialsAvailable as e:
            logging.error(f"No credentials available to list models: {e}")
            raise HTTPException(status_code=503, detail=str(e))
        except UpstreamError as e:
            return _upstream_failure_response(e)
        except CREDENTIAL_SOURCE_ERRORS as e:
            return _credential_source_failure_response(e)

    return app


app = create_app()


def main(argv: Optional[List[str]] = None):
    parser = argparse.ArgumentParser(description="Key Relay Server")
    parser.add_argument("--host", type=str, default="0.0.0.0", help="Host to bind the server to.")
    parser.add_argument("--port", type=int, default=8000, help="Port to run the server on.")
    parser.add_argument(
        "--enable-request-logging", action="store_true", help="Enable request logging."
    )
    parser.add_argument(
        "--key-tool",
        action="store_true",
        help="Launch the interactive tool to inspect and manage the credential pool.",
    )
    args = parser.parse_args(argv)

    if args.key_tool:
        from key_relay.key_tool import run_key_tool

        run_key_tool()
        return

    _start_time = time.time()
    configure_logging(_root_dir / "logs")

    settings = RelaySettings.from_env()
    server_app = create_app(settings=settings)
    server_app.state.enable_request_logging = args.enable_request_logging
    if args.enable_request_logging:
        logging.info("Request logging is enabled.")
    if not server_app.state.proxy_api_key:
        logging.warning("PROXY_API_KEY is not set - anyone can access the relay!")

    print("━" * 70)
    print(f"Starting relay on {args.host}:{args.port}")
    print(f"Upstream: {settings.api_host} ({settings.api_type})")
    print("━" * 70)
    logging.debug(f"Startup took {time.time() - _start_time:.2f}s")

    import uvicorn

    uvicorn.run(server_app, host=args.host, port=args.port)


if __name__ == "__main__":
    main()
