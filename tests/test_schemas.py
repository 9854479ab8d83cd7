from datetime import datetime, timedelta, timezone

import pytest

from depfinder.schemas import (
    BatchProgress,
    DependentRepository,
    EmptyReason,
    PackagesRequest,
    RepoRef,
    RunState,
)


def repo(full_name: str, stars: int = 0, package_name: str = "", **extra) -> DependentRepository:
    return DependentRepository(
        name=full_name.split("/")[-1],
        full_name=full_name,
        url=f"https://github.com/{full_name}",
        stars=stars,
        package_name=package_name,
        **extra,
    )


@pytest.mark.parametrize(
    "value",
    [
        "acme/widgets",
        "https://github.com/acme/widgets",
        "https://github.com/acme/widgets.git",
        "github.com/acme/widgets/tree/main/packages",
        "git@github.com:acme/widgets.git",
        "  acme/widgets/  ",
    ],
)
def test_repo_ref_parse(value: str) -> None:
    ref = RepoRef.parse(value)
    assert (ref.owner, ref.repo) == ("acme", "widgets")
    assert ref.full_name == "acme/widgets"


@pytest.mark.parametrize("value", ["acme", "/widgets", "https://github.com/acme"])
def test_repo_ref_parse_rejects_incomplete_input(value: str) -> None:
    with pytest.raises(ValueError):
        RepoRef.parse(value)


def test_packages_request_accepts_owner_and_repo() -> None:
    assert PackagesRequest(owner="acme", repo="widgets").to_ref().full_name == "acme/widgets"
    assert PackagesRequest(repository="acme/widgets").to_ref().full_name == "acme/widgets"


def test_is_active_uses_six_month_window() -> None:
    now = datetime.now(timezone.utc)
    assert repo("org/fresh", last_updated=now - timedelta(days=10)).is_active is True
    assert repo("org/stale", last_updated=now - timedelta(days=400)).is_active is False
    assert repo("org/unknown").is_active is False
    assert "is_active" in repo("org/unknown").model_dump()


def test_merge_keeps_first_record_per_repository() -> None:
    progress = BatchProgress()

    assert progress.merge([repo("org/a", package_name="first"), repo("org/b")]) == 2
    assert progress.merge([repo("org/a", package_name="second"), repo("org/c")]) == 1

    assert [r.full_name for r in progress.results_so_far] == ["org/a", "org/b", "org/c"]
    assert progress.results_so_far[0].package_name == "first"


def test_mark_partial_is_sticky() -> None:
    progress = BatchProgress()
    progress.mark_partial("rate limited", "retry later")
    progress.mark_partial("rate limited again")

    assert progress.is_partial is True
    assert progress.resume_hint == "retry later"


def test_snapshot_ranks_by_stars_with_stable_ties() -> None:
    progress = BatchProgress(state=RunState.COMPLETED)
    progress.merge([repo("org/a", 5), repo("org/b", 9), repo("org/c", 5), repo("org/d", 1)])

    first = progress.snapshot(page=1, page_size=3)
    second = progress.snapshot(page=2, page_size=3)

    assert [r.full_name for r in first.data] == ["org/b", "org/a", "org/c"]
    assert first.has_next_page is True
    assert [r.full_name for r in second.data] == ["org/d"]
    assert second.has_next_page is False


def test_snapshot_reports_more_when_finders_were_truncated() -> None:
    progress = BatchProgress(has_more=True)
    progress.merge([repo("org/a")])

    assert progress.snapshot(page=1, page_size=30).has_next_page is True


def test_completed_run_without_results_explains_why() -> None:
    assert BatchProgress(state=RunState.COMPLETED).snapshot().empty_reason == (
        EmptyReason.NO_DEPENDENTS_FOUND
    )
    assert BatchProgress(state=RunState.ABORTED).snapshot().empty_reason is None
