"""
Build a changelog from the commit history of a branch.

Commits are walked from the branch tip towards the root. Every time the walk
reaches a tagged commit a new section starts, so commit messages end up
grouped below the tag that bounds them. Optionally each section is closed by
a link to the hosting service's compare / commits view.

This module knows nothing about git itself: it consumes a repository provider
(see git_changelog.GitRepository) and writes lines to an output sink.
"""

import re
import string
from dataclasses import dataclass, field
from datetime import datetime, tzinfo
from typing import Optional


DEFAULT_DATE_FORMAT = '%m/%d/%Y %I:%M %p %z'

BEFORE_FIRST_COMMIT = 'before-first-commit'
IN_BRANCH = 'in-branch'
IN_TAG = 'in-tag'


class ChangelogError(Exception):
    """Base class for all errors raised while generating a changelog."""


class RepositoryUnavailable(ChangelogError):
    """The repository cannot be opened or its history cannot be read."""


class TagResolutionFailure(ChangelogError):
    """The date or timezone of a tag cannot be loaded."""

    def __init__(self, tag_name, reason):
        super().__init__(f"Unable to load tag '{tag_name}': {reason}")
        self.tag_name = tag_name


class PatternCompilationFailure(ChangelogError):
    """The commit exclusion pattern is not a valid regular expression."""

    def __init__(self, pattern, reason):
        super().__init__(f"Invalid pattern for skipped commits '{pattern}': {reason}")
        self.pattern = pattern


class TemplateError(ChangelogError):
    """A template refers to unknown fields or is not a valid format string."""

    def __init__(self, name, template, reason):
        super().__init__(f"Invalid {name} template '{template}': {reason}")
        self.name = name
        self.template = template


@dataclass(frozen=True)
class Commit:
    id: str
    message: str
    parent_count: int = 1
    authored_date: int = 0

    @property
    def subject(self):
        """First line of the commit message."""
        lines = self.message.strip().split('\n')
        return lines[0].rstrip()

    @property
    def is_merge(self):
        return self.parent_count > 1


@dataclass
class Tag:
    """
    A tag and the commit it points at.

    ``date`` and ``timezone`` stay empty until the repository provider
    resolves the tag, which only happens once the walk actually reaches it.
    """
    name: str
    commit_id: str
    date: Optional[datetime] = None
    timezone: Optional[tzinfo] = None

    @property
    def loaded(self):
        return self.date is not None and self.timezone is not None

    def local_date(self):
        """Tag date expressed in the timezone recorded on the tag."""
        return self.date.astimezone(self.timezone)


def unescape(template):
    return template.replace('\\n', '\n').replace('\\t', '\t')


# Fields each template may refer to
TEMPLATE_FIELDS = {
    'branch': ('branch',),
    'tag': ('tag', 'date'),
    'branch_only_link': ('branch', 'url'),
    'branch_link': ('branch', 'tag', 'url'),
    'tag_link': ('tag', 'url'),
    'footer': ('date',),
}


def validate_template(name, template):
    """
    Check a template against the fields it may use.

    Raises:
        TemplateError: if the template uses an unknown or positional field,
            or cannot be formatted at all
    """
    allowed = TEMPLATE_FIELDS[name]
    try:
        for _, field_name, _, _ in string.Formatter().parse(template):
            if field_name is None:
                continue
            if field_name not in allowed:
                expected = ', '.join('{' + f + '}' for f in allowed)
                raise TemplateError(name, template, f"unknown field '{{{field_name}}}' (expected {expected})")
        template.format(**{f: '' for f in allowed})
    except (ValueError, KeyError, IndexError, AttributeError) as e:
        raise TemplateError(name, template, e) from e
    return template


@dataclass
class ChangelogFormat:
    """
    Text templates used to render a changelog.

    Templates use named fields:

    - header: no fields
    - branch: {branch}
    - tag: {tag}, {date}
    - branch_only_link: {branch}, {url}
    - branch_link: {branch}, {tag}, {url}
    - tag_link: {tag}, {url}

    The commit line is ``commit_prefix`` followed by the commit subject.
    """
    header: str = 'Changelog\n========='
    branch: str = '\nCommits on branch "{branch}"\n'
    tag: str = '\nVersion {tag} – {date}\n'
    commit_prefix: str = ' * '
    branch_only_link: str = '\nSee Git history for changes in the "{branch}" branch at: {url}'
    branch_link: str = '\nSee Git history for changes in the "{branch}" branch since version {tag} at: {url}'
    tag_link: str = '\nSee Git history for version {tag} at: {url}'
    create_links: bool = True

    def prepare(self):
        """
        Turn escaped newlines and tabs (as typed on a command line) into real
        ones and check the templates.
        """
        self.header = unescape(self.header)
        self.branch = unescape(self.branch)
        self.tag = unescape(self.tag)
        self.commit_prefix = unescape(self.commit_prefix)
        self.branch_only_link = unescape(self.branch_only_link)
        self.branch_link = unescape(self.branch_link)
        self.tag_link = unescape(self.tag_link)
        self.validate()
        return self

    def validate(self):
        """Raise TemplateError unless every template can be rendered."""
        for name in ('branch', 'tag', 'branch_only_link', 'branch_link', 'tag_link'):
            validate_template(name, getattr(self, name))


MARKDOWN_FORMAT = dict(
    header='# Changelog',
    branch='\n## Commits on branch `{branch}`\n',
    tag='\n## Version {tag} – {date}\n',
    commit_prefix='* ',
    branch_only_link='\n[Git history for the `{branch}` branch]({url})',
    branch_link='\n[Git history for the `{branch}` branch since {tag}]({url})',
    tag_link='\n[Git history for version {tag}]({url})',
)

FORMATS = {
    'default': {},
    'markdown': MARKDOWN_FORMAT,
}


def get_format(name, **overrides):
    """
    Build one of the built-in formats.

    Args:
        name: Format name, one of FORMATS
        **overrides: Template values replacing the format's own ones, ``None``
            values are ignored

    Returns:
        A prepared ChangelogFormat
    """
    if name not in FORMATS:
        raise ValueError(f"Unknown changelog format '{name}' (expected one of {', '.join(sorted(FORMATS))})")
    values = dict(FORMATS[name])
    values.update({key: value for key, value in overrides.items() if value is not None})
    return ChangelogFormat(**values).prepare()


@dataclass
class ChangelogConfig:
    format: ChangelogFormat = field(default_factory=ChangelogFormat)
    base_url: Optional[str] = None
    skip_commits_matching: Optional[str] = None
    skip_merge_commits: bool = True
    skip_tagged: bool = False
    date_format: str = DEFAULT_DATE_FORMAT
    footer: str = ''
    footer_date: Optional[datetime] = None

    @property
    def links_enabled(self):
        return bool(self.base_url) and self.format.create_links

    def link_base_url(self):
        if self.base_url.endswith('/'):
            return self.base_url
        return self.base_url + '/'

    def compile_skip_pattern(self):
        """Return the compiled exclusion pattern, or None if none is configured."""
        if not self.skip_commits_matching:
            return None
        try:
            return re.compile(self.skip_commits_matching, re.MULTILINE)
        except re.error as e:
            raise PatternCompilationFailure(self.skip_commits_matching, e) from e


def build_tag_index(tags):
    """
    Map commit ids to the tag pointing at them.

    When several tags point at the same commit only the last one listed is
    kept.
    """
    return {tag.commit_id: tag for tag in tags}


class CommitFilter:
    """Decides whether a commit's message gets its own line in the changelog."""

    def __init__(self, config):
        self.pattern = config.compile_skip_pattern()
        self.skip_merge_commits = config.skip_merge_commits
        self.skip_tagged = config.skip_tagged

    def should_render(self, commit, tag_index):
        if self.pattern is not None and self.pattern.search(commit.message):
            return False
        if self.skip_merge_commits and commit.is_merge:
            return False
        if self.skip_tagged and commit.id in tag_index:
            return False
        return True


@dataclass
class WalkState:
    current_tag: Optional[Tag] = None
    last_tag: Optional[Tag] = None
    first_commit: bool = True

    @property
    def phase(self):
        if self.first_commit:
            return BEFORE_FIRST_COMMIT
        if self.current_tag is None:
            return IN_BRANCH
        return IN_TAG


class TemplateRenderer:

    def __init__(self, changelog_format, date_format=DEFAULT_DATE_FORMAT):
        self.format = changelog_format
        self.date_format = date_format

    def header(self):
        return self.format.header

    def branch_heading(self, branch, first=False):
        return self._heading(self.format.branch.format(branch=branch), first)

    def tag_heading(self, tag, first=False):
        date = tag.local_date().strftime(self.date_format)
        return self._heading(self.format.tag.format(tag=tag.name, date=date), first)

    def commit_line(self, commit):
        return self.format.commit_prefix + commit.subject

    def branch_only_link(self, branch, url):
        return self.format.branch_only_link.format(branch=branch, url=url)

    def branch_link(self, branch, tag, url):
        return self.format.branch_link.format(branch=branch, tag=tag, url=url)

    def tag_link(self, tag, url):
        return self.format.tag_link.format(tag=tag, url=url)

    def footer(self, template, date):
        return template.format(date=date.strftime(self.date_format))

    @staticmethod
    def _heading(text, first):
        # The very first heading of the output never starts with a blank line
        if first and text.startswith('\n'):
            return text[1:]
        return text


class LinkBuilder:
    """Builds links to the compare / commits views of a hosted repository."""

    def __init__(self, base_url, renderer):
        self.base_url = base_url
        self.renderer = renderer

    def url(self, last_ref, current_ref=None):
        if current_ref is None:
            return f"{self.base_url}commits/{last_ref}"
        return f"{self.base_url}compare/{last_ref}...{current_ref}"

    def link(self, last_ref, current_ref, is_branch):
        """
        Render the link text for a section of the changelog.

        Without a current ref the link points to the commits view listing
        everything reachable from ``last_ref``. Otherwise it points to the
        compare view listing the commits in ``current_ref`` but not in
        ``last_ref``.

        Args:
            last_ref: The older tag (or the branch when no tag exists)
            current_ref: The newer tag or branch, or None
            is_branch: Whether the link leads to a branch

        Returns:
            The rendered link text
        """
        url = self.url(last_ref, current_ref)
        if is_branch:
            if current_ref is None:
                return self.renderer.branch_only_link(last_ref, url)
            return self.renderer.branch_link(current_ref, last_ref, url)
        return self.renderer.tag_link(current_ref or last_ref, url)


class BoundaryDetector:
    """
    Recognizes when the walk crosses into the commit range of a new tag.

    The detector holds no walk state of its own: every call to process()
    receives the WalkState of the running walk and updates it.
    """

    def __init__(self, repository, tag_index, renderer, branch, link_builder=None):
        self.repository = repository
        self.tag_index = tag_index
        self.renderer = renderer
        self.branch = branch
        self.link_builder = link_builder

    def process(self, commit, state, rendered=True):
        """
        Feed the next commit of the walk.

        The walk stays before its first commit until a heading is written or
        a commit line is rendered, so filtered commits at the branch tip
        neither open an empty branch section nor count as the first commit.

        Args:
            commit: The commit just reached, newer commits come first
            state: The WalkState of the running walk
            rendered: Whether the commit's own line will be written

        Returns:
            Lines to write before the commit's own line
        """
        lines = []
        first = state.first_commit
        tag = self.tag_index.get(commit.id)

        if tag is not None:
            state.last_tag = state.current_tag
            state.current_tag = tag
            if self.link_builder is not None and not first:
                if state.last_tag is None:
                    lines.append(self.link_builder.link(tag.name, self.branch, True))
                else:
                    lines.append(self.link_builder.link(tag.name, state.last_tag.name, False))
            self._load(tag)
            lines.append(self.renderer.tag_heading(tag, first=first))
            state.first_commit = False
        elif first and rendered:
            lines.append(self.renderer.branch_heading(self.branch, first=True))

        if rendered:
            state.first_commit = False
        return lines

    def _load(self, tag):
        if tag.loaded:
            return
        resolved = self.repository.resolve_tag_details(tag)
        if resolved is not tag:
            tag.date = resolved.date
            tag.timezone = resolved.timezone
        if not tag.loaded:
            raise TagResolutionFailure(tag.name, 'no date or timezone recorded')


def generate_changelog(config, repository, sink):
    """
    Walk the branch of a repository and write its changelog.

    Args:
        config: ChangelogConfig
        repository: Repository provider
        sink: Object with a ``write_line(text)`` method

    Returns:
        The latest tag reached by the walk (the oldest one in history), or
        None if the branch contains no tags
    """
    config.format.validate()
    if config.footer:
        validate_template('footer', config.footer)
    commit_filter = CommitFilter(config)
    renderer = TemplateRenderer(config.format, config.date_format)

    branch = repository.branch_name()
    tag_index = build_tag_index(repository.all_tags())

    link_builder = None
    if config.links_enabled:
        link_builder = LinkBuilder(config.link_base_url(), renderer)

    detector = BoundaryDetector(repository, tag_index, renderer, branch, link_builder)
    state = WalkState()

    sink.write_line(renderer.header())

    for commit in repository.commits_from_branch_tip():
        rendered = commit_filter.should_render(commit, tag_index)
        for line in detector.process(commit, state, rendered):
            sink.write_line(line)
        if rendered:
            sink.write_line(renderer.commit_line(commit))

    if link_builder is not None:
        if state.current_tag is None:
            sink.write_line(link_builder.link(branch, None, True))
        else:
            sink.write_line(link_builder.link(state.current_tag.name, None, False))

    if config.footer:
        sink.write_line(renderer.footer(config.footer, config.footer_date or datetime.now().astimezone()))

    return state.current_tag
