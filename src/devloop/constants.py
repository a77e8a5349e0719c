"""Global constants for devloop."""

# Source tree layout (relative to the source root)

CLIENT_ENTRY = "client/index.js"
SERVER_ENTRY = "server/index.js"
ASSETS_GLOB = "assets/**"

DEFAULT_SOURCE_ROOT = "src"

# Output layout (relative to the destination root)

DEFAULT_DEST_ROOT = "dist"
CLIENT_OUTPUT_DIR = "public"
CLIENT_BUNDLE_NAME = "bundle.js"
SERVER_BUNDLE_NAME = "server.js"

# Ports

DEFAULT_APP_PORT = 5000
DEFAULT_PROXY_PORT = 3000
DEFAULT_HOST = "localhost"

# Timing (seconds)

DEFAULT_SETTLE_WINDOW = 0.5
DEFAULT_GRACE_PERIOD = 0.5
DEFAULT_STARTUP_TIMEOUT = 15.0
DEFAULT_STOP_TIMEOUT = 3.0
DEFAULT_PORT_RELEASE_TIMEOUT = 5.0

# Readiness signal printed by the application server
DEFAULT_READY_PATTERN = r"Server started|[Ll]istening"

# External commands
DEFAULT_BUNDLER_COMMAND = (
    "esbuild",
    "{entry}",
    "--bundle",
    "--outfile={outfile}",
    "--platform={platform}",
)
DEV_BUNDLER_ARGS = ("--sourcemap=inline",)
SERVER_BUNDLER_ARGS = ("--packages=external",)
DEFAULT_SERVER_RUNTIME = "node"

# Environment variables
ENV_MODE = "DEVLOOP_ENV"
ENV_MODE_FALLBACK = "NODE_ENV"
ENV_SOURCE_ROOT = "DEVLOOP_SRC"
ENV_DEST_ROOT = "DEVLOOP_DEST"
ENV_APP_PORT = "PORT"
ENV_PROXY_PORT = "DEVLOOP_PROXY_PORT"
ENV_SETTLE_MS = "DEVLOOP_SETTLE_MS"
ENV_BUNDLER = "DEVLOOP_BUNDLER"
ENV_SERVER_COMMAND = "DEVLOOP_SERVER_COMMAND"

# Dev server routing
DEVLOOP_MANAGEMENT_PREFIX = "/__devloop__"
RELOAD_CHANNEL_PATH = f"{DEVLOOP_MANAGEMENT_PREFIX}/reload"
RELOAD_SCRIPT_PATH = f"{DEVLOOP_MANAGEMENT_PREFIX}/client.js"
DEVLOOP_PROXY_HEADER = "x-devloop-proxy"

# Log buffer size for the dev server
LOG_BUFFER_SIZE = 5000
