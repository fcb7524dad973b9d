# =============================================================================
# File: engage/chat/ports/__init__.py
# Description: Ports directory for Chat domain
# =============================================================================
# EMPTY - use direct imports:
#   from engage.chat.ports.thread_provider_port import ThreadProviderPort
#   from engage.chat.ports.chat_group_store_port import ChatGroupStorePort
