import os


DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./picross.db")

# secret for signing player tokens; override with SESSION_SECRET env var in production
SESSION_SECRET = os.getenv("SESSION_SECRET", "dev-secret-change-me")
COOKIE_SECURE = os.getenv("COOKIE_SECURE", "0") in ("1", "true", "True")

# Square puzzle sizes a new game may request
ALLOWED_SIZES = (5, 10)
DEFAULT_SIZE = 10

MOVE_CAP = int(os.getenv("PICROSS_MOVE_CAP", "20000"))
MAX_BATCH = int(os.getenv("PICROSS_MAX_BATCH", "50"))

STALE_STARTED_MINUTES = int(os.getenv("PICROSS_STALE_STARTED_MINUTES", "240"))
STALE_UNSTARTED_MINUTES = int(os.getenv("PICROSS_STALE_UNSTARTED_MINUTES", "60"))

LEADERBOARD_LIMIT = int(os.getenv("PICROSS_LEADERBOARD_LIMIT", "50"))
LEADERBOARD_TTL_SECONDS = int(os.getenv("PICROSS_LEADERBOARD_TTL_SECONDS", "30"))

CORS_ORIGINS = [
    o.strip()
    for o in os.getenv("PICROSS_CORS_ORIGINS", "http://localhost:3000,http://localhost:5173").split(",")
    if o.strip()
]
