from urllib.parse import quote

WAITING_KEY = "waiting:{user_id}" # user id - WaitingUser json
WAITING_PREFIX = "waiting:"
IDENTITY_KEY = "user:{user_id}" # user id - {userId, username}, TTL
CONNECTION_KEY = "connection:{connection_id}" # connection id - ActiveConnection json
USER_CONNECTION_KEY = "user-connection:{user_id}" # user id - pointer to partner + connection
SIGNAL_PREFIX = "signal:{user_id}:" # recipient id - followed by a sortable suffix
MESSAGE_PREFIX = "message:{user_id}:" # recipient id - followed by a sortable suffix


def key_part(user_id: str) -> str:
    """Percent-encode an id for use inside a key.

    Ids are opaque, so ``:`` and ``_`` must not reach a key or a connection id raw.
    """
    return quote(str(user_id), safe="").replace("_", "%5F")


# **Example `waiting:{userId}` value**
# - `userId` = opaque, client generated
# - `username` = e.g. `Stranger_4821`
# - `interests` = ["music", "gaming"]
# - `enqueuedAt` = ISO timestamp

# **Example `user-connection:{userId}` value**
# - `ownerId` = `{userId}`
# - `partnerId` = the other participant
# - `connectionId` = both ids sorted, passed through key_part and joined with `_`

# Every {user_id} above is filled with key_part(user_id).

# **TTL**
# - `signal:*` expires after SIGNAL_TTL_SECONDS, `message:*` after MESSAGE_TTL_SECONDS.
# - `user:*` expires after IDENTITY_TTL_SECONDS and is refreshed on every join.
# - `waiting:*`, `connection:*` and `user-connection:*` live until disconnect.
