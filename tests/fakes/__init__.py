from tests.fakes.call_tracking import CallRecord
from tests.fakes.fake_capabilities import FakeBlobStore, FakeCache, FakeSecretProvider
from tests.fakes.fake_chat_group_store import FakeChatGroupStore
from tests.fakes.fake_directory import FakeDirectory, make_user
from tests.fakes.fake_thread_provider import ROOT_IDENTITY, FakeThreadProvider

__all__ = [
    "CallRecord",
    "FakeBlobStore",
    "FakeCache",
    "FakeChatGroupStore",
    "FakeDirectory",
    "FakeSecretProvider",
    "FakeThreadProvider",
    "ROOT_IDENTITY",
    "make_user",
]
