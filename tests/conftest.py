"""Shared fixtures: an in-memory repository provider and a recording sink."""

from datetime import datetime, timedelta, timezone

import pytest

from changelog import Commit, Tag


class FakeRepository:
    """
    Repository provider over a fixed history.

    Args:
        commits: Commits, newest first
        tags: Mapping of tag name to (commit id, aware datetime)
        branch: Branch name
    """

    def __init__(self, commits, tags=None, branch='main'):
        self.commits = list(commits)
        self.tags = tags or {}
        self.branch = branch
        self.resolved = []

    def head_commit(self):
        return self.commits[0]

    def commits_from_branch_tip(self):
        return iter(self.commits)

    def branch_name(self):
        return self.branch

    def all_tags(self):
        return [Tag(name=name, commit_id=commit_id) for name, (commit_id, _) in self.tags.items()]

    def resolve_tag_details(self, tag):
        self.resolved.append(tag.name)
        date = self.tags[tag.name][1]
        tag.date = date
        tag.timezone = date.tzinfo
        return tag


class RecordingSink:

    def __init__(self):
        self.lines = []

    def write_line(self, text):
        self.lines.append(text)


def commit(commit_id, message=None, parents=1):
    return Commit(id=commit_id, message=message or f"Commit {commit_id}\n\nBody of {commit_id}", parent_count=parents)


UTC_PLUS_2 = timezone(timedelta(hours=2))


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def scenario_repository():
    """C1 (tip, untagged) <- C2 (v1.0) <- C3 on branch main, newest first."""
    return FakeRepository(
        [commit('c1'), commit('c2'), commit('c3')],
        tags={'v1.0': ('c2', datetime(2024, 3, 1, 12, 30, tzinfo=UTC_PLUS_2))},
    )


@pytest.fixture
def two_tag_repository():
    """Tip tagged v2.0, older commit tagged v1.0."""
    return FakeRepository(
        [commit('c1'), commit('c2'), commit('c3'), commit('c4')],
        tags={
            'v2.0': ('c1', datetime(2024, 6, 1, 9, 0, tzinfo=timezone.utc)),
            'v1.0': ('c3', datetime(2024, 1, 1, 9, 0, tzinfo=timezone.utc)),
        },
    )
