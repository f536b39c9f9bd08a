REDIS_ROOM_INDEX_KEY = "room:index" # set of room ids
REDIS_META_KEY = "room:meta:{slug}" # room id
REDIS_PARTICIPANTS_KEY = "room:participants:{slug}" # room id - set of participant IDs
REDIS_PARTICIPANT_KEY = "room:participant:{slug}:{participant_id}" # participant fields
REDIS_PRESENCE_KEY = "room:presence:{slug}" # room id - set of connected participant IDs
REDIS_DISCONNECTS_KEY = "room:disconnects:{slug}" # room id - participant id -> ISO timestamp
REDIS_ROOM_CHANNEL = "room:channel:{slug}" # room id - pub/sub channel name

# **Example `room:meta:{id}` hash fields** (values are JSON encoded)
# - `title` = room title
# - `revealed` = true/false
# - `created_at` = ISO timestamp
# - `countdown_active`, `countdown_started_at`, `countdown_started_by`
# - `reset_active`, `reset_initiated_at`, `reset_initiated_by`

# **Example `room:participant:{id}:{pid}` hash fields**
# - `id`, `name`, `selected_card`, `is_revealed`, `is_admin`
