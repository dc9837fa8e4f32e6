"""Mirror all attachments reachable through a Redmine REST API to local files."""

# pyright: reportAny=false, reportExplicitAny=false
# pyright: reportImplicitOverride=false, reportUnusedCallResult=false

from argparse import (
    ArgumentDefaultsHelpFormatter,
    ArgumentParser,
    RawDescriptionHelpFormatter,
)
from collections.abc import Iterator, Sequence
from contextlib import suppress
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from tempfile import NamedTemporaryFile
from types import TracebackType
from typing import Any, TypeAlias, cast
import logging
import os
import sys

from platformdirs import user_cache_dir
from tqdm import tqdm
from yarl import URL
import requests

__version__ = "0.2.0"

__all__ = (
    "__version__",
    "main",
    "run",
    "parse_args",
    "Config",
    "Client",
    "Mirror",
    "Syncer",
    "Stats",
    "Issue",
    "Attachment",
    "SyncError",
    "ConfigError",
    "RangeResolutionError",
    "FetchError",
    "MalformedURLError",
    "DownloadError",
    "Json",
    "JsonD",
)

Json: TypeAlias = dict[str, "Json"] | list["Json"] | str | int | float | bool | None
JsonD: TypeAlias = dict[str, Json]

log = logging.getLogger(__name__)

DOWNLOAD_PREFIX = "attachments/download"
CHUNK_SIZE = 64 * 1024

# statuses meaning "no such issue for this key", everything else >= 400 is fatal
NOT_VISIBLE = frozenset({403, 404})


class SyncError(RuntimeError):
    """Any condition that aborts a sync run."""


class ConfigError(SyncError):
    pass


class RangeResolutionError(SyncError):
    pass


class FetchError(SyncError):
    pass


class MalformedURLError(SyncError):
    pass


class DownloadError(SyncError):
    pass


def default_sync_dir() -> Path:
    return Path(user_cache_dir()) / ".redminesync"


@dataclass(frozen=True, slots=True)
class Config:
    base_url: str = ""
    api_key: str = ""
    sync_dir: Path = field(default_factory=default_sync_dir)
    start: int = 1
    end: int = 0  # 0 means find the max issue number
    verbose: bool = False
    progress: bool = False
    timeout: float = 60.0

    def validate(self) -> None:
        if not self.api_key:
            raise ConfigError("REDMINE_API_KEY not defined and -k not given")
        if not self.base_url:
            raise ConfigError("REDMINE_BASE_URL not defined and -b not given")
        if self.start < 1:
            raise ConfigError(f"start issue number must be positive: {self.start}")
        if self.end < 0:
            raise ConfigError(f"end issue number must not be negative: {self.end}")


class APIObject:
    __slots__ = ("_data",)

    _data: JsonD

    def __init__(self, data: JsonD):
        self._data = data

    def get_data(self) -> JsonD:
        return self._data

    @property
    def id(self) -> int:
        return int(cast(int, self._data["id"]))

    def __repr__(self) -> str:
        if isinstance(self._data, dict):
            return f"{type(self).__name__}({self._data.get('id')!r})"
        return f"{type(self).__name__}(<invalid {self._data!r}>)"


class Attachment(APIObject):
    """One entry of an issue's ``attachments`` list.

    Only ``content_url`` is needed to mirror the file; the other fields are
    exposed for callers that want to report on what was fetched.
    """

    __slots__ = ()

    @property
    def content_url(self) -> str:
        return cast(str, self._data.get("content_url") or "")

    @property
    def filename(self) -> str:
        return cast(str, self._data.get("filename") or "")

    @property
    def content_type(self) -> str | None:
        return cast(str | None, self._data.get("content_type"))

    @property
    def filesize(self) -> int | None:
        return cast(int | None, self._data.get("filesize"))

    @property
    def description(self) -> str | None:
        # redmine sends "" for attachments without a description
        return cast(str, self._data.get("description")) or None

    @property
    def author(self) -> str | None:
        if author := cast(JsonD | None, self._data.get("author")):
            return cast(str | None, author.get("name"))
        return None

    @property
    def created_on(self) -> str | None:
        return cast(str | None, self._data.get("created_on"))


class Issue(APIObject):
    __slots__ = ()

    @classmethod
    def from_response(cls, data: Json) -> "Issue":
        if not isinstance(data, dict) or not isinstance(issue := data.get("issue"), dict):
            raise FetchError("decode: response has no issue object")

        attachments = issue.get("attachments") or []
        if not isinstance(attachments, list):
            raise FetchError("decode: issue attachments is not a list")
        for attachment in attachments:
            if not isinstance(attachment, dict) or not isinstance(
                attachment.get("content_url", ""), str
            ):
                raise FetchError(f"decode: unexpected attachment: {attachment!r}")

        return cls(issue)

    @property
    def subject(self) -> str:
        return cast(str, self._data.get("subject") or "")

    def attachments(self) -> Iterator[Attachment]:
        for attachment in cast(list[JsonD], self._data.get("attachments") or ()):
            yield Attachment(attachment)


@dataclass(slots=True)
class Client:
    base_url: str
    api_key: str
    timeout: float = 60.0
    session: requests.Session = field(default_factory=requests.Session)

    def __post_init__(self):
        self.session.headers.update(
            {
                "User-Agent": f"redminesync/{__version__}",
                "X-Redmine-API-Key": self.api_key,
            }
        )

    def __enter__(self) -> "Client":
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        self.session.close()

    @property
    def base(self) -> URL:
        return URL(self.base_url.rstrip("/"))

    def issue_url(self, issue_id: int) -> URL:
        return (self.base / "issues" / f"{issue_id}.json").with_query(
            include="attachments"
        )

    def get(self, url: URL | str, **kwargs: Any) -> requests.Response:
        return self.session.get(str(url), timeout=self.timeout, **kwargs)

    def issue(self, issue_id: int) -> Issue | None:
        """Fetch an issue with its attachments, or None if it is not visible."""
        url = self.issue_url(issue_id)
        with self.get(url) as r:
            if r.status_code in NOT_VISIBLE:
                return None
            if r.status_code >= 400:
                raise FetchError(f"{r.status_code} {r.reason}: {url}")
            try:
                data = cast(Json, r.json())
            except requests.JSONDecodeError as e:
                raise FetchError(f"decode: {url}: {e}") from e

        return Issue.from_response(data)

    def max_issue(self, lookahead: int = 16) -> int:
        """Find the highest issue number visible with this API key.

        The sorted issue listing answers this in one request. Instances that
        hide the listing are probed issue by issue instead, which may miss
        issues behind a run of more than ``lookahead`` missing ids.
        """
        try:
            if (listed := self._listed_max_issue()) is not None:
                return listed
            return self._probed_max_issue(lookahead)
        except requests.RequestException as e:
            raise RangeResolutionError(f"find max issue: {e}") from e

    def _listed_max_issue(self) -> int | None:
        url = (self.base / "issues.json").with_query(
            status_id="*", sort="id:desc", limit=1
        )
        with self.get(url) as r:
            if r.status_code in NOT_VISIBLE:
                return None
            if r.status_code >= 400:
                raise RangeResolutionError(f"{r.status_code} {r.reason}: {url}")
            try:
                issues = cast(list[JsonD], cast(JsonD, r.json())["issues"])
                ids = [int(cast(int, issue["id"])) for issue in issues]
            except (requests.JSONDecodeError, KeyError, TypeError, ValueError) as e:
                raise RangeResolutionError(f"decode: {url}: {e}") from e

        # an empty listing may just mean the listing is filtered, so probe
        return max(ids) if ids else None

    def _exists(self, issue_id: int) -> bool:
        url = self.issue_url(issue_id)
        with self.get(url) as r:
            if r.status_code == 404:
                return False
            if r.status_code == 403 or r.ok:
                return True
            raise RangeResolutionError(f"{r.status_code} {r.reason}: {url}")

    def _probed_max_issue(self, lookahead: int) -> int:
        found = 0
        while True:
            # gallop until we overshoot, then bisect between found and missing
            step = 1
            while self._exists(found + step):
                found += step
                step *= 2
            missing = found + step

            while missing - found > 1:
                mid = (found + missing) // 2
                if self._exists(mid):
                    found = mid
                else:
                    missing = mid

            for issue_id in range(found + 1, found + 1 + lookahead):
                if self._exists(issue_id):
                    found = issue_id
                    break
            else:
                return found


@dataclass(slots=True)
class Mirror:
    client: Client
    sync_dir: Path

    def destination(self, link: str, issue_id: int) -> Path:
        try:
            path = URL(link).path
        except (TypeError, ValueError) as e:
            raise MalformedURLError(f"unexpected redmine download url: {link}") from e

        suffix = path.replace(DOWNLOAD_PREFIX, "", 1)
        if len(path) - len(suffix) != len(DOWNLOAD_PREFIX):
            raise MalformedURLError(f"unexpected redmine download url: {link}")

        parts = [p for p in PurePosixPath(suffix).parts if p.strip("/")]
        if not parts or ".." in parts:
            raise MalformedURLError(f"unexpected redmine download url: {link}")

        return self.sync_dir / str(issue_id) / Path(*parts)

    def download(self, link: str, issue_id: int) -> bool:
        """Make sure the attachment at link exists below the issue directory.

        Returns True if the file was downloaded, False if something already
        existed at its destination (which is never checked or overwritten).
        """
        dst = self.destination(link, issue_id)
        dst.parent.mkdir(mode=0o755, parents=True, exist_ok=True)

        if os.path.lexists(dst):
            log.info("already downloaded: %s", dst)
            return False

        size = self._fetch(link, dst)
        log.info("downloaded [%d]: %s", size, link)
        return True

    def _fetch(self, link: str, dst: Path) -> int:
        size = 0
        f = NamedTemporaryFile("wb", prefix="redminesync-", delete=False)
        try:
            with f, self.client.get(link, stream=True) as r:
                if r.status_code != 200:
                    raise DownloadError(
                        f"bad status: {r.status_code} {r.reason}: {link}"
                    )
                for chunk in r.iter_content(chunk_size=CHUNK_SIZE):
                    size += f.write(chunk)

            # the temp file is closed here, so dst only ever sees complete files
            Path(f.name).rename(dst)
        except BaseException:
            with suppress(FileNotFoundError):
                os.unlink(f.name)
            raise

        return size


@dataclass(slots=True)
class Stats:
    issues: int = 0
    skipped: int = 0
    downloaded: int = 0
    present: int = 0


@dataclass(slots=True)
class Syncer:
    client: Client
    mirror: Mirror
    progress: bool = False

    def sync(self, start: int, end: int) -> Stats:
        stats = Stats()

        with tqdm(
            total=max(end - start + 1, 0), unit="issue", disable=not self.progress
        ) as bar:
            for issue_id in range(start, end + 1):
                bar.update(1)

                issue = self.client.issue(issue_id)
                if issue is None:
                    stats.skipped += 1
                    continue

                stats.issues += 1
                for attachment in issue.attachments():
                    if self.mirror.download(attachment.content_url, issue_id):
                        stats.downloaded += 1
                    else:
                        stats.present += 1

        return stats


def run(config: Config, session: requests.Session | None = None) -> Stats:
    config.validate()
    log.info("syncing redmine attachments to %s", config.sync_dir)

    kwargs: dict[str, Any] = {} if session is None else {"session": session}
    with Client(config.base_url, config.api_key, config.timeout, **kwargs) as client:
        end = config.end
        if end == 0:
            end = client.max_issue()
            log.info("found max issue number: %d", end)

        syncer = Syncer(
            client=client,
            mirror=Mirror(client, config.sync_dir),
            progress=config.progress and not config.verbose,
        )
        stats = syncer.sync(config.start, end)

    log.info(
        "%d issues, %d not visible, %d files downloaded, %d already present",
        stats.issues,
        stats.skipped,
        stats.downloaded,
        stats.present,
    )
    return stats


@dataclass(frozen=True, slots=True)
class DefaultPath:
    path: str

    def __str__(self):
        try:
            return f"~/{Path(self.path).relative_to(Path.home())}"
        except ValueError:
            return self.path


class HelpFormatter(ArgumentDefaultsHelpFormatter, RawDescriptionHelpFormatter):
    pass


DESCRIPTION = """\
Downloads all reachable attachments from redmine into a local folder. The
target folder structure will look like:

    DIRECTORY/123/456/file.txt

Where 123 is the issue number and 456 the download id.

Limitation: Currently all ticket ids are rechecked on every invocation, since
any tickets might have a new upload.

Environment variables: REDMINE_API_KEY, REDMINE_BASE_URL
"""


def parse_args(argv: Sequence[str] | None = None) -> Config:
    def default(key: str) -> Any:
        return Config.__dataclass_fields__[key].default

    parser = ArgumentParser(
        prog="redminesync",
        description=DESCRIPTION,
        formatter_class=HelpFormatter,
    )
    parser.add_argument(
        "-V",
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )
    parser.add_argument(
        "-b",
        dest="base_url",
        metavar="URL",
        help="redmine base url, falls back to $REDMINE_BASE_URL",
    )
    parser.add_argument(
        "-k",
        dest="api_key",
        metavar="KEY",
        help="redmine api key, falls back to $REDMINE_API_KEY",
    )
    parser.add_argument(
        "-d",
        dest="sync_dir",
        metavar="DIRECTORY",
        default=DefaultPath(str(default_sync_dir())),
        help="target directory, must be on the same filesystem as the temp dir "
        "($TMPDIR) since downloads are renamed into place",
    )
    parser.add_argument(
        "-f",
        dest="start",
        type=int,
        metavar="INT",
        default=default("start"),
        help="start with this issue number, might shorten the process",
    )
    parser.add_argument(
        "-t",
        dest="end",
        type=int,
        metavar="INT",
        default=default("end"),
        help="end with this issue number, 0 finds the max issue number",
    )
    parser.add_argument(
        "-verbose",
        "--verbose",
        dest="verbose",
        action="store_true",
        help="be verbose",
    )
    parser.add_argument(
        "-P",
        dest="progress",
        action="store_true",
        help="show progressbar",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        metavar="SECONDS",
        default=default("timeout"),
        help="timeout for each HTTP request",
    )

    args = parser.parse_args(argv)
    if isinstance(args.sync_dir, DefaultPath):
        args.sync_dir = args.sync_dir.path
    if args.base_url is None:
        args.base_url = os.environ.get("REDMINE_BASE_URL", "")
    if args.api_key is None:
        args.api_key = os.environ.get("REDMINE_API_KEY", "")

    return Config(
        base_url=args.base_url,
        api_key=args.api_key,
        sync_dir=Path(args.sync_dir),
        start=args.start,
        end=args.end,
        verbose=args.verbose,
        progress=args.progress,
        timeout=args.timeout,
    )


def _main(
    argv: Sequence[str] | None = None, session: requests.Session | None = None
) -> int:
    config = parse_args(argv)

    logging.basicConfig(
        level=logging.INFO if config.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(message)s",
        stream=sys.stderr,
    )

    try:
        run(config, session=session)
    except (SyncError, requests.RequestException, OSError) as e:
        log.error("%s", e)
        return 1

    return 0


def main() -> None:
    with suppress(KeyboardInterrupt):
        sys.exit(_main())
    sys.exit(130)


if __name__ == "__main__":
    main()
