"""Shared default constants for feedworker."""

# Feed a JobQueue reads from when none is configured.
DEFAULT_FEED_NAME: str = 'jobs'

# Number of head items a subscription watches. With 1, removing the head
# announces the next item, so a backlog drains one notification at a time.
DEFAULT_NOTIFY_WINDOW: int = 1

# Prefix of the LISTEN/NOTIFY channel carrying a feed's item keys.
FEED_CHANNEL_PREFIX: str = 'feedworker_'

# Upper bound on NOTIFY messages drained per wake-up of a subscription pump.
COALESCE_NOTIFIES: int = 100

# Environment variable the CLI reads the database URL from.
DATABASE_URL_ENV: str = 'FEEDWORKER_DATABASE_URL'
