"""Symbol names, type names and label tables for the inspected server.

Everything the engine knows about the target's build lives here so that a
differently built target only needs edits in one place.
"""
from typing import Dict

# ============================================================================
# Section markers
# ============================================================================
SECTION_MARKER = "<<<SECTION:{name}>>>"

SECTION_THREAD1 = "thread1.txt"
SECTION_BRIEF = "brief.txt"
SECTION_FULL = "full.txt"
SECTION_LOCKS = "locks.txt"
SECTION_INFO = "info.txt"

# ============================================================================
# Container layouts (astobj2)
# ============================================================================
HASH_CONTAINER_TYPE = "struct ao2_container_hash"
HASH_NODE_TYPE = "struct hash_bucket_node"
TREE_CONTAINER_TYPE = "struct ao2_container_rbtree"
TREE_NODE_TYPE = "struct rbtree_node"

CONTAINER_ELEMENTS_PATH = "common.elements"
HASH_BUCKET_COUNT_PATH = "n_buckets"
HASH_BUCKETS_PATH = "buckets"
HASH_BUCKET_HEAD_PATH = "list.last"
HASH_NODE_LINK_PATH = "links.prev"
TREE_ROOT_PATH = "root"
TREE_LEFT_PATH = "left"
TREE_RIGHT_PATH = "right"
NODE_PAYLOAD_PATH = "common.obj"
# sanity limit on n_buckets; larger values mean the header is corrupt
MAX_HASH_BUCKETS = 1 << 24

# ============================================================================
# Global symbols
# ============================================================================
TASKPROCESSORS_SYMBOL = "tps_singletons"
TASKPROCESSOR_TYPE = "struct ast_taskprocessor"

CHANNELS_SYMBOL = "channels"
CHANNEL_TYPE = "struct ast_channel"
COUNTCALLS_SYMBOL = "countcalls"
TOTALCALLS_SYMBOL = "totalcalls"

BRIDGES_SYMBOL = "bridges"
BRIDGE_TYPE = "struct ast_bridge"

LOCK_INFOS_SYMBOL = "lock_infos"
LOCK_INFO_TYPE = "struct thr_lock_info"
MUTEX_TYPE = "ast_mutex_t"

BUILD_STRINGS = (
    ("Version", "asterisk_version"),
    ("Built by", "ast_build_user"),
    ("Build host", "ast_build_hostname"),
    ("Build kernel", "ast_build_kernel"),
    ("Build machine", "ast_build_machine"),
    ("Build OS", "ast_build_os"),
    ("Build date", "ast_build_date"),
)
BUILD_OPTIONS_SYMBOL = "asterisk_build_opts"
STARTUP_TIME_SYMBOL = "ast_startuptime"
RELOAD_TIME_SYMBOL = "ast_lastreloadtime"

# ============================================================================
# Label tables
# ============================================================================
CHANNEL_STATES: Dict[int, str] = {
    0: "Down",
    1: "Rsrvd",
    2: "OffHook",
    3: "Dialing",
    4: "Ring",
    5: "Ringing",
    6: "Up",
    7: "Busy",
    8: "Dialing Offhook",
    9: "Pre-ring",
}

LOCK_TYPES: Dict[int, str] = {
    0: "MUTEX",
    1: "RDLOCK",
    2: "WRLOCK",
}

# Sentinels produced by the record decoder
NONE_STRING = "None"
EMPTY_STRING = "<None>"
UNAVAILABLE = "unavailable"
