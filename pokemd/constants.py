# pokemd constants (command verbs, HTTP header names, state keys)

DEFAULT_COMMAND_PREFIX = "!pokem"
DEFAULT_ROOM_KEY = "default"
URGENT_SUFFIX = "-urgent"

# Room mention used for urgent messages without a dedicated urgent room.
ROOM_MENTION = "@room"

# Admission status values
ADMISSION_PENDING = "pending"
ADMISSION_ACCEPTED = "accepted"
ADMISSION_REJECTED = "rejected"
ADMISSION_STATES = (ADMISSION_PENDING, ADMISSION_ACCEPTED, ADMISSION_REJECTED)

# Message formats
FORMAT_MARKDOWN = "markdown"
FORMAT_PLAIN = "plain"

# Priorities (ntfy compatible). Anything above PRIORITY_DEFAULT is urgent.
PRIORITY_DEFAULT = 3
PRIORITY_NAMES = {
    "min": 1,
    "low": 2,
    "default": 3,
    "high": 4,
    "urgent": 5,
    "max": 5,
}

# Header/query lookups, first match wins
H_AUTH = ("authentication", "auth")
H_TITLE = ("x-title", "title", "ti", "t")
H_MESSAGE = ("x-message", "message", "m")
H_PRIORITY = ("x-priority", "priority", "prio", "p")
H_TAGS = ("x-tags", "tags", "tag", "ta")
H_FORMAT = ("format",)

# Keys accepted by `set` for the auth token. The password spellings are kept for
# configs written against older releases.
AUTH_KEYS = ("auth", "authentication", "password", "pass")

# State file tables/keys
S_SESSION = "session"
S_ROOMS = "rooms"
S_AUTH = "auth"
S_AUTH_SET_BY = "auth_set_by"
S_BLOCK = "block"
S_ADMISSION = "admission"
S_MEMBER_COUNT = "member_count"
