# =============================
# Flask control API settings
# =============================
FLASK_HOST = "127.0.0.1"
FLASK_PORT = 5000
# Longest a request handler waits on the control plane
API_CALL_TIMEOUT_SEC = 60.0

# =============================
# HTTP Basic Authentication
# =============================
USERNAME = "admin"      # CHANGE
PASSWORD = "changeme"   # CHANGE

# =============================
# Settings store
# =============================
SERVERS_FILE = "servers.json"

# =============================
# RCON
# =============================
RCON_DEFAULT_HOST = "127.0.0.1"
RCON_DEFAULT_PORT = 27015

RCON_AUTH_TIMEOUT_SEC = 10.0
RCON_COMMAND_TIMEOUT_SEC = 5.0
RCON_SERVER_CHECK_TIMEOUT_SEC = 5.0

# Reconnect backoff: delay = min(BASE * 2^(attempt-1), MAX)
RCON_RECONNECT_BASE_DELAY_SEC = 5.0
RCON_RECONNECT_MAX_DELAY_SEC = 30.0
RCON_RECONNECT_MAX_ATTEMPTS = 30

RCON_AUTO_RECONNECT_SEC = 60.0
RCON_HEALTH_CHECK_SEC = 60.0
RCON_MAX_HEALTH_FAILURES = 3
RCON_HEALTH_CHECK_COMMAND = "players"

# Clears a "server starting" guard that nobody cleared.
RCON_STARTING_FAILSAFE_SEC = 300.0

RCON_ERROR_LOG_COOLDOWN_SEC = 60.0

# =============================
# Panel bridge (file protocol)
# =============================
BRIDGE_DIR_NAME = "panelbridge"
BRIDGE_POLL_INTERVAL_SEC = 0.3
BRIDGE_STATUS_CHECK_SEC = 1.0
BRIDGE_COMMAND_TIMEOUT_SEC = 15.0
# Remote heartbeat is ~5s, so 45s is ~9 missed beats.
BRIDGE_STATUS_STALE_SEC = 45.0
BRIDGE_MAX_CONSECUTIVE_FAILURES = 5
BRIDGE_WATCH_DEBOUNCE_SEC = 0.1
BRIDGE_WATCH_MAX_RETRIES = 3
BRIDGE_WATCH_RETRY_DELAY_SEC = 5.0
BRIDGE_SEEN_RESULTS_MAX = 100

# =============================
# Game process
# =============================
SERVER_START_SCRIPT = "StartServer64.bat"
# Dedicated server runs as java with this main class on its command line
SERVER_PROCESS_MARKER = "zombie.network.gameserver"
PROCESS_KILL_WAIT_SEC = 10.0

# =============================
# Restart orchestration
# =============================
RESTART_WARNING_MINUTES = 5
RESTART_MESSAGE_TIMEOUT_SEC = 5.0
RESTART_VERIFY_TIMEOUT_SEC = 15.0
RESTART_SAVE_TIMEOUT_SEC = 10.0
RESTART_QUIT_TIMEOUT_SEC = 10.0
RESTART_DEATH_POLL_ATTEMPTS = 60
RESTART_LAUNCH_POLL_ATTEMPTS = 60
RESTART_POLL_INTERVAL_SEC = 1.0
# 60s + 4 x 45s, ~4 minutes for the game to bring RCON up.
RESTART_RCON_RECONNECT_DELAYS_SEC = [60.0, 45.0, 45.0, 45.0, 45.0]
RESTART_RCON_ATTEMPT_TIMEOUT_SEC = 15.0

# =============================
# Logging
# =============================
LOG_LEVEL = "INFO"
LOG_FORMAT = "[server-panel] %(asctime)s %(levelname)s %(name)s %(message)s"
LOG_FILE = "server_panel.log"
RECENT_EVENTS_MAX = 200
