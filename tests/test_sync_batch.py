# =============================================================================
# File: tests/test_sync_batch.py
# Description: Branch batch reconciliation and the sync worker entry point
# =============================================================================

import pytest

from engage.chat.enums import GroupType
from engage.chat.sync_results import BranchSyncReport, GroupSyncOutcome, SyncAction
from engage.workers import chat_sync_worker

from tests.conftest import BRANCH_ID
from tests.fakes import make_user


@pytest.fixture
def staffed_branch(directory):
    return directory.add_users(
        make_user("ADM1", level=3),
        make_user("FS1"),
        make_user("FS2"),
    )


async def test_sync_branch_creates_system_and_direct_message_groups(service, store, staffed_branch):
    report = await service.sync_branch(BRANCH_ID)

    assert report.succeeded
    assert report.count(SyncAction.CREATED) == 3
    dm_owners = {g.intended_for_user_id for g in store.groups.values() if g.group_type == GroupType.DIRECT_MESSAGE}
    assert dm_owners == {"FS1", "FS2"}


async def test_second_sync_is_unchanged(service, provider, staffed_branch):
    await service.sync_branch(BRANCH_ID)
    provider.clear_calls()

    report = await service.sync_branch(BRANCH_ID)

    assert report.count(SyncAction.CREATED) == 0
    assert provider.mutating_calls() == []


async def test_system_groups_only(service, store, staffed_branch):
    reports = await service.sync_branches([BRANCH_ID], system_groups_only=True)

    assert [o.category for o in reports[0].outcomes] == ["Announcements"]
    assert all(g.group_type == GroupType.BROADCAST for g in store.groups.values())


async def test_failing_branch_does_not_stop_the_batch(service, store, staffed_branch):
    reports = await service.sync_branches(["B404", BRANCH_ID])

    assert [r.branch_id for r in reports] == ["B404", BRANCH_ID]
    assert not reports[0].succeeded
    assert reports[0].outcomes[0].action == SyncAction.FAILED
    assert reports[1].succeeded
    assert store.groups


async def test_directory_outage_is_reported_on_the_branch(service, directory, staffed_branch):
    directory.configure_failure("get_by_branch", "directory unreachable")

    reports = await service.sync_branches([BRANCH_ID])

    assert reports[0].error
    assert "directory unreachable" in reports[0].error
    assert not reports[0].succeeded


def test_report_metrics():
    report = BranchSyncReport(
        branch_id=BRANCH_ID,
        outcomes=[
            GroupSyncOutcome(action=SyncAction.CREATED),
            GroupSyncOutcome(action=SyncAction.UNCHANGED),
            GroupSyncOutcome(action=SyncAction.DRIFT),
        ],
        error="boom",
    )

    assert report.to_metrics() == {
        "categories": 3,
        "created": 1,
        "reconciled": 0,
        "unchanged": 1,
        "drift": 1,
        "failed": 1,
    }


# =============================================================================
# Worker entry point
# =============================================================================

def test_parse_args():
    args = chat_sync_worker.parse_args(["--system-groups-only", "101", "102"])

    assert args.branch_ids == ["101", "102"]
    assert args.system_groups_only is True
    assert args.apply_schema is False


def test_parse_args_needs_a_branch():
    with pytest.raises(SystemExit):
        chat_sync_worker.parse_args([])


@pytest.mark.parametrize(
    "outcomes, error, exit_code",
    [
        ([GroupSyncOutcome(action=SyncAction.CREATED)], None, 0),
        ([GroupSyncOutcome(action=SyncAction.DRIFT)], None, 2),
        ([], "branch aborted", 2),
    ],
)
def test_main_exit_codes(monkeypatch, outcomes, error, exit_code):
    async def fake_run_worker(args):
        return [BranchSyncReport(branch_id=b, outcomes=outcomes, error=error) for b in args.branch_ids]

    monkeypatch.setattr(chat_sync_worker, "run_worker", fake_run_worker)

    assert chat_sync_worker.main(["101"]) == exit_code


def test_main_interrupted(monkeypatch):
    def interrupted_run(coro):
        coro.close()
        raise KeyboardInterrupt

    monkeypatch.setattr(chat_sync_worker.asyncio, "run", interrupted_run)

    assert chat_sync_worker.main(["101"]) == 130
