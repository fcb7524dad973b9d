# =============================================================================
# File: engage/chat/cache_keys.py
# Description: Cache namespaces used by the chat domain
# =============================================================================

# group_id -> serialized ChatGroup (short TTL, invalidated on every mutation)
GROUP_NAMESPACE = "chat_group"

# root user id -> serialized root VendorToken
VENDOR_TOKEN_NAMESPACE = "acs_token"

# group_id -> hash of employee_id -> {message_id, timestamp}
READ_MARKER_NAMESPACE = "chat_read"
