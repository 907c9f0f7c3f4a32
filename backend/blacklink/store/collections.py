"""Collection names in the remote record store."""

USERS = "users"
USERNAMES = "usernames"
SUBSCRIPTIONS = "subscriptions"
AERO_TOKENS = "aero_tokens"
ORGANIZATIONS = "organizations"
STATS = "stats"
QUICKLAUNCH = "quicklaunch"

GLOBAL_STATS_ID = "global"
