import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from .agent.client import ClaudeAgentBackend
from .agent.providers import ModelResolver
from .api.routes import router
from .chat.executor import TurnExecutor
from .chat.streams import StreamResumer, initialize_stream_backend, shutdown_stream_backend
from .config import API_KEY_ENCRYPTION_KEY, AUTH_SECRET, DATA_DIR, ROOT_PATH, SQLITE_PATH, STREAM_STORE_PATH
from .data.credentials import ApiKeyCipher, CredentialStore
from .data.sqlite_store import SQLiteStore
from .errors import install_error_handlers

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(name)s %(levelname)s %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    DATA_DIR.mkdir(parents=True, exist_ok=True)

    logger.info("Initializing SQLite store...")
    sqlite_store = SQLiteStore(str(SQLITE_PATH))
    await sqlite_store.initialize()

    logger.info("Initializing stream backend...")
    continuations = await initialize_stream_backend(STREAM_STORE_PATH)

    credential_store = CredentialStore(sqlite_store, ApiKeyCipher(API_KEY_ENCRYPTION_KEY or AUTH_SECRET))
    # Fails startup when the default model binding is unusable
    resolver = ModelResolver(credential_store)

    logger.info("Initializing turn executor (default model %s)...", resolver.default_model.id)
    turn_executor = TurnExecutor(sqlite_store, resolver, ClaudeAgentBackend(), continuations)

    app.state.sqlite_store = sqlite_store
    app.state.credential_store = credential_store
    app.state.turn_executor = turn_executor
    app.state.stream_resumer = StreamResumer(sqlite_store, continuations)

    logger.info("Startup complete, ready to serve")
    yield

    # Shutdown
    logger.info("Shutting down...")
    await turn_executor.close()
    await shutdown_stream_backend()
    await sqlite_store.close()


app = FastAPI(title="Agent Builder Chat", root_path=ROOT_PATH, lifespan=lifespan)
install_error_handlers(app)
app.include_router(router)
