"""
Generate a changelog of the currently checked out branch of a git repository.

The history of the branch is read with GitPython and handed to
changelog.generate_changelog(). The changelog is printed to the console or
saved to a file, and may contain links to the GitHub compare views between
consecutive tags.
"""

import argparse
import sys
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path

import git

from changelog import (
    DEFAULT_DATE_FORMAT,
    FORMATS,
    ChangelogConfig,
    ChangelogError,
    Commit,
    RepositoryUnavailable,
    Tag,
    TagResolutionFailure,
    generate_changelog,
    get_format,
    unescape,
    validate_template,
)


DEFAULT_FOOTER = '\\nGenerated by tag-changelog at {date}'

_REVISION_ERRORS = (ValueError, git.exc.BadName, git.exc.GitCommandError)


def tz_from_offset(offset):
    """Convert a git timezone offset (seconds west of UTC) to a tzinfo."""
    return timezone(timedelta(seconds=-offset))


def remote_to_https(remote_url):
    """Turn an origin URL (https or ssh form) into the https URL of the project."""
    if remote_url.startswith('git@'):
        remote_url = remote_url.replace(':', '/').replace('git@', 'https://')
    if remote_url.endswith('.git'):
        remote_url = remote_url[:-4]
    return remote_url


def github_base_url(user, project):
    return f"https://github.com/{user}/{project}/"


class GitRepository:
    """
    Repository provider reading history from a git repository.

    Args:
        repo_path: Path to the repository or any directory inside it
        branch: Branch (or any revision) to walk, defaults to HEAD
        first_parent: Only follow the first parent of merge commits
    """

    def __init__(self, repo_path='.', branch=None, first_parent=False):
        try:
            self.repo = git.Repo(repo_path, search_parent_directories=True)
        except (git.exc.InvalidGitRepositoryError, git.exc.NoSuchPathError) as e:
            raise RepositoryUnavailable(f"Unable to read Git repository at '{repo_path}': {e}") from e
        self.branch = branch
        self.first_parent = first_parent
        self._tag_refs = {}

    @property
    def revision(self):
        return self.branch or 'HEAD'

    def head_commit(self):
        try:
            return self._to_commit(self.repo.commit(self.revision))
        except _REVISION_ERRORS as e:
            raise RepositoryUnavailable(f"Unable to resolve '{self.revision}': {e}") from e

    def branch_name(self):
        if self.branch:
            return self.branch
        try:
            return self.repo.active_branch.name
        except TypeError:
            # Detached HEAD
            return self.head_commit().id

    def commits_from_branch_tip(self):
        """Yield the commits of the branch, newest first."""
        self.head_commit()
        kwargs = {}
        if self.first_parent:
            kwargs['first_parent'] = True
        try:
            for commit in self.repo.iter_commits(self.revision, **kwargs):
                yield self._to_commit(commit)
        except git.exc.GitCommandError as e:
            raise RepositoryUnavailable(f"Unable to walk the history of '{self.revision}': {e}") from e

    def all_tags(self):
        """
        List the tags of the repository without loading their dates.

        Tags pointing at anything but a commit are ignored.
        """
        tags = []
        self._tag_refs = {}
        try:
            tag_refs = self.repo.tags
        except git.exc.GitCommandError as e:
            raise RepositoryUnavailable(f"Unable to list tags: {e}") from e
        for tag_ref in tag_refs:
            try:
                commit_id = tag_ref.commit.hexsha
            except ValueError:
                continue
            self._tag_refs[tag_ref.name] = tag_ref
            tags.append(Tag(name=tag_ref.name, commit_id=commit_id))
        return tags

    def resolve_tag_details(self, tag):
        """
        Load the date and timezone of a tag.

        Annotated tags carry their own tagger date, lightweight tags use the
        commit date of the tagged commit.
        """
        if tag.loaded:
            return tag
        tag_ref = self._tag_refs.get(tag.name)
        if tag_ref is None:
            tag_ref = git.TagReference(self.repo, git.TagReference.to_full_path(tag.name))
        try:
            tag_object = tag_ref.tag
            if tag_object is not None:
                timestamp, offset = tag_object.tagged_date, tag_object.tagger_tz_offset
            else:
                commit = tag_ref.commit
                timestamp, offset = commit.committed_date, commit.committer_tz_offset
        except (ValueError, git.exc.GitCommandError) as e:
            raise TagResolutionFailure(tag.name, e) from e
        tag.timezone = tz_from_offset(offset)
        tag.date = datetime.fromtimestamp(timestamp, tag.timezone)
        return tag

    def origin_url(self):
        """Return the https URL of the origin remote, or None."""
        try:
            remote_url = self.repo.remotes.origin.url
        except AttributeError:
            return None
        return remote_to_https(remote_url)

    @staticmethod
    def _to_commit(commit):
        return Commit(
            id=commit.hexsha,
            message=commit.message,
            parent_count=len(commit.parents),
            authored_date=commit.authored_date,
        )


class StreamSink:
    """Writes each changelog line, followed by a newline, to a text stream."""

    def __init__(self, stream):
        self.stream = stream

    def write_line(self, text):
        self.stream.write(text + '\n')


@contextmanager
def open_sink(output_path=None, encoding='utf-8'):
    """
    Open the sink the changelog is written to.

    Without an output path the changelog goes to the console, which is
    flushed but left open. Otherwise the parent directories of the file are
    created as needed.
    """
    if output_path is None:
        yield StreamSink(sys.stdout)
        sys.stdout.flush()
        return

    path = Path(output_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, 'w', encoding=encoding) as f:
        yield StreamSink(f)


def resolve_base_url(args, repository):
    if args.base_url:
        return args.base_url
    if args.github_user and args.github_project:
        return github_base_url(args.github_user, args.github_project)
    if args.link_origin:
        origin = repository.origin_url()
        if origin:
            return origin + '/'
        print("[!] No origin remote found, changelog links are disabled", file=sys.stderr)
    return None


def build_config(args, repository):
    """Build the changelog configuration from parsed command line arguments."""
    changelog_format = get_format(
        args.format,
        header=args.header,
        branch=args.branch_template,
        tag=args.tag_template,
        commit_prefix=args.commit_prefix,
    )
    footer = '' if args.no_footer else unescape(args.footer)
    if footer:
        validate_template('footer', footer)
    return ChangelogConfig(
        format=changelog_format,
        base_url=resolve_base_url(args, repository),
        skip_commits_matching=args.skip_commits_matching,
        skip_merge_commits=not args.include_merge_commits,
        skip_tagged=args.skip_tagged,
        date_format=args.date_format,
        footer=footer,
    )


def export_changelog(args):
    """
    Generate the changelog described by the command line arguments.

    Returns:
        The latest tag of the changelog, or None
    """
    repository = GitRepository(args.repo_path, branch=args.branch, first_parent=args.first_parent)
    config = build_config(args, repository)

    head = repository.head_commit()
    print(f"[*] Generating changelog for '{repository.branch_name()}' at {head.id[:7]}...", file=sys.stderr)

    with open_sink(args.output, args.encoding) as sink:
        latest_tag = generate_changelog(config, repository, sink)

    if args.output:
        print(f"[OK] Changelog written to {args.output}", file=sys.stderr)
    if latest_tag is None:
        print("[OK] No tags found on this branch", file=sys.stderr)
    return latest_tag


def build_parser():
    parser = argparse.ArgumentParser(
        description='Generate a changelog of a git branch grouped by tags',
        formatter_class=argparse.RawDescriptionHelpFormatter
    )

    parser.add_argument(
        '--repo_path',
        type=str,
        default='.',
        help='Path to the repository (default: current directory)'
    )

    parser.add_argument(
        '--branch',
        type=str,
        default=None,
        help='Branch to walk (default: the checked out branch)'
    )

    parser.add_argument(
        '--first_parent',
        action='store_true',
        help='Only follow the first parent of merge commits'
    )

    parser.add_argument(
        '--output',
        type=str,
        default=None,
        help='File to write the changelog to (default: print to the console)'
    )

    parser.add_argument(
        '--encoding',
        type=str,
        default='utf-8',
        help='Encoding of the output file (default: utf-8)'
    )

    parser.add_argument(
        '--format',
        choices=sorted(FORMATS),
        default='default',
        help='Built-in changelog format (default: default)'
    )

    parser.add_argument(
        '--header',
        type=str,
        default=None,
        help='Header printed above the changelog'
    )

    parser.add_argument(
        '--tag_template',
        type=str,
        default=None,
        help='Heading of a tag section, fields: {tag}, {date}'
    )

    parser.add_argument(
        '--branch_template',
        type=str,
        default=None,
        help='Heading of the untagged commits at the branch tip, field: {branch}'
    )

    parser.add_argument(
        '--commit_prefix',
        type=str,
        default=None,
        help='Text printed before each commit message'
    )

    parser.add_argument(
        '--skip_commits_matching',
        type=str,
        default=None,
        help='Regex pattern to skip commits by message'
    )

    parser.add_argument(
        '--include_merge_commits',
        action='store_true',
        help="Include merge commits' messages (skipped by default)"
    )

    parser.add_argument(
        '--skip_tagged',
        action='store_true',
        help="Skip tagged commits' messages, e.g. \"Version bump to X.Y.Z\""
    )

    parser.add_argument(
        '--github_user',
        type=str,
        default=None,
        help='GitHub user owning the project, used for links'
    )

    parser.add_argument(
        '--github_project',
        type=str,
        default=None,
        help='GitHub project name, used for links'
    )

    parser.add_argument(
        '--base_url',
        type=str,
        default=None,
        help='Base URL of the hosted repository, used for links'
    )

    parser.add_argument(
        '--link_origin',
        action='store_true',
        help='Derive the base URL for links from the origin remote'
    )

    parser.add_argument(
        '--date_format',
        type=str,
        default=DEFAULT_DATE_FORMAT,
        help='strftime pattern for tag dates'
    )

    parser.add_argument(
        '--footer',
        type=str,
        default=DEFAULT_FOOTER,
        help='Footer printed below the changelog, field: {date}'
    )

    parser.add_argument(
        '--no_footer',
        action='store_true',
        help='Do not print a footer'
    )

    return parser


def main(argv=None):
    args = build_parser().parse_args(argv)

    try:
        export_changelog(args)
    except ChangelogError as e:
        print(f"[ERROR] {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == '__main__':
    main()
