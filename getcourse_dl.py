import json
import logging
import pathlib
import re
from collections import deque
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterator, List, Optional

import click
import m3u8
import requests
from bs4 import BeautifulSoup
from dotenv import load_dotenv

logger = logging.getLogger(__name__)

LOGIN_PATH = '/cms/system/login'
PLAYER_ID_PREFIX = 'vhi-root-'
PLAYER_SRC_ATTRIBUTE = 'data-iframe-src'
CONFIGS_MARKER = 'window.configs ='
MASTER_PLAYLIST_FIELD = 'masterPlaylistUrl'
TARGET_RESOLUTION = (1920, 1080)
USER_AGENT = 'Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36'


class CmsError(Exception):
    """Base class for every failure while talking to the portal."""


class AuthenticationError(CmsError):
    """The portal rejected the login request."""


class TransportError(CmsError):
    """A request failed or came back with a non-success status."""

    def __init__(self, message: str, url: Optional[str] = None, status: Optional[int] = None):
        super().__init__(message)
        self.url = url
        self.status = status


class ParseError(CmsError):
    """Markup, embedded JSON or a playlist could not be interpreted."""


class ManifestNotFoundError(CmsError):
    """A playable media playlist was expected but none was found."""


@dataclass
class Settings:
    email: str
    password: str
    root_url: str
    download_dir: pathlib.Path
    workers: int = 1
    fail_fast: bool = False
    skip_existing: bool = False

    def __post_init__(self):
        self.root_url = self.root_url.rstrip('/')
        self.download_dir = pathlib.Path(self.download_dir)


@dataclass(frozen=True)
class Category:
    """A listing page whose lessons are saved under the folder `name`."""
    url: str
    name: str


@dataclass
class LessonPage:
    title: str
    player_url: str


@dataclass
class Rendition:
    width: int
    height: int
    uri: str


class StreamOutcome(Enum):
    FOUND = 'found'
    NO_MARKER = 'no-marker'
    PARSE_FAILED = 'parse-failed'
    NO_MATCH = 'no-match'


@dataclass
class StreamResolution:
    outcome: StreamOutcome
    uri: Optional[str] = None
    detail: str = ''


@dataclass
class DownloadJob:
    download_dir: pathlib.Path
    category_name: str
    index: int
    title: str


@dataclass
class LessonResult:
    """Outcome of one lesson (or of a whole category when `index` is None)."""
    category: str
    index: Optional[int]
    link: str
    path: Optional[pathlib.Path] = None
    error: Optional[Exception] = None
    skipped: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class DownloadReport:
    results: List[LessonResult] = field(default_factory=list)

    def add(self, result: LessonResult) -> None:
        self.results.append(result)

    @property
    def downloaded(self) -> List[LessonResult]:
        return [r for r in self.results if r.ok and not r.skipped]

    @property
    def skipped(self) -> List[LessonResult]:
        return [r for r in self.results if r.skipped]

    @property
    def failed(self) -> List[LessonResult]:
        return [r for r in self.results if not r.ok]

    @property
    def has_failures(self) -> bool:
        return bool(self.failed)

    def summary(self) -> str:
        lines = [
            f"Downloaded: {len(self.downloaded)}, skipped: {len(self.skipped)}, failed: {len(self.failed)}"
        ]
        for result in self.failed:
            where = f"lesson {result.index}" if result.index is not None else "category"
            lines.append(f"  ✗ [{result.category}] {where} ({result.link}): {result.error}")
        return '\n'.join(lines)


def sanitize_name(name: str) -> str:
    """Strip characters that are not allowed in file names."""
    return re.sub(r'[\\/*?:"<>|]', "", name).strip()


def fmt_size(n: float) -> str:
    for unit in ("B", "KB", "MB", "GB"):
        if n < 1024:
            return f"{n:.1f} {unit}"
        n /= 1024
    return f"{n:.1f} TB"


def _is_success(response) -> bool:
    return 200 <= response.status_code < 300


def portal_url(root_url: str, path: str) -> str:
    """Builds an absolute portal URL from a path found on a portal page."""
    if path.startswith(('http://', 'https://')):
        return path
    if not path.startswith('/'):
        path = '/' + path
    return f"{root_url}{path}"


def create_session() -> requests.Session:
    """
    Create the HTTP session shared by every request of a run.

    The portal ties authorization to cookies, so the session's cookie jar is
    the only state that matters after login.

    Returns:
        requests.Session: A session with browser-like default headers.
    """
    session = requests.Session()
    session.headers.update({'User-Agent': USER_AGENT})
    return session


def authenticate(session: requests.Session, settings: Settings) -> None:
    """
    Log in to the portal, leaving the authorization cookies on the session.

    Args:
        session: The session every later request will reuse.
        settings: Holds the portal root URL and the credentials.

    Raises:
        AuthenticationError: If the request fails or returns a non-2xx status.
    """
    login_url = portal_url(settings.root_url, LOGIN_PATH)
    login_data = {
        'action': 'processXdget',
        'xdgetId': '99945_1',
        'params[action]': 'login',
        'params[url]': login_url,
        'params[email]': settings.email,
        'params[password]': settings.password,
        'params[null]': '',
        'params[object_type]': 'cms_page',
        'params[object_id]': '-1',
    }

    logger.info(f"Logging in at {login_url} as {settings.email}...")
    try:
        response = session.post(login_url, data=login_data)
    except requests.exceptions.RequestException as e:
        raise AuthenticationError(f"Login request to {login_url} failed: {e}") from e

    if not _is_success(response):
        raise AuthenticationError(f"Login rejected by {login_url} with HTTP {response.status_code}")
    logger.info("✅ Logged in.")


def fetch(session: requests.Session, url: str, stage: str) -> requests.Response:
    """
    GET `url` through the authenticated session.

    Args:
        session: The authenticated session.
        url: Absolute URL to fetch.
        stage: Short name of the pipeline step, used in error messages.

    Returns:
        The response, guaranteed to have a 2xx status.

    Raises:
        TransportError: On network failure or a non-2xx status.
    """
    logger.debug(f"GET {url} ({stage})")
    try:
        response = session.get(url)
    except requests.exceptions.RequestException as e:
        raise TransportError(f"{stage}: request to {url} failed: {e}", url=url) from e

    if not _is_success(response):
        raise TransportError(
            f"{stage}: {url} returned HTTP {response.status_code}",
            url=url,
            status=response.status_code,
        )
    return response


def _parse_links_from_html(html_content: str) -> List[str]:
    """
    (Helper Function) Extracts the lesson links of a listing page.

    Args:
        html_content: The HTML content of the listing page.

    Returns:
        The href of every anchor nested in a list item, in document order.
    """
    soup = BeautifulSoup(html_content, 'html.parser')
    return [link_tag['href'] for link_tag in soup.select('li a[href]')]


def discover_links(session: requests.Session, root_url: str, listing_path: str) -> List[str]:
    """
    Fetches a category listing page and returns its lesson links.

    Args:
        session: The authenticated session.
        root_url: The portal root URL.
        listing_path: Path of the listing page under the root.

    Returns:
        The lesson links in document order. An empty list means an empty category.
    """
    response = fetch(session, portal_url(root_url, listing_path), 'listing page')
    links = _parse_links_from_html(response.text)
    logger.info(f"🔎 {len(links)} lesson links found on {listing_path}")
    return links


def _parse_lesson_page_from_html(html_content: str) -> LessonPage:
    """
    (Helper Function) Extracts the title and player URL of a lesson page.

    The player URL comes from the first `vhi-root-*` container that carries
    `data-iframe-src`; it is empty when no container does. The title is the
    text of the last <h2>, since earlier <h2> elements belong to page chrome.

    Args:
        html_content: The HTML content of the lesson page.

    Returns:
        A LessonPage; either field may be an empty string.
    """
    soup = BeautifulSoup(html_content, 'html.parser')

    player_url = ''
    for container in soup.select(f'[id^="{PLAYER_ID_PREFIX}"]'):
        src = container.get(PLAYER_SRC_ATTRIBUTE)
        if src:
            player_url = src
            break
        logger.warning(f"Player container #{container.get('id')} has no {PLAYER_SRC_ATTRIBUTE} attribute")

    headings = soup.find_all('h2')
    title = headings[-1].get_text(' ', strip=True) if headings else ''

    return LessonPage(title=title, player_url=player_url)


def resolve_page(session: requests.Session, root_url: str, link: str) -> LessonPage:
    """
    Fetches a lesson page and extracts its title and embedded player URL.

    Args:
        session: The authenticated session.
        root_url: The portal root URL.
        link: Lesson link as found on the listing page.

    Returns:
        The LessonPage. `player_url` is empty if the page embeds no player.
    """
    response = fetch(session, portal_url(root_url, link), 'lesson page')
    lesson = _parse_lesson_page_from_html(response.text)
    if not lesson.player_url:
        logger.warning(f"No embedded player found on {link}")
    return lesson


def extract_master_manifest_url(script_text: str) -> Optional[str]:
    """
    Reads `masterPlaylistUrl` out of an inline `window.configs = {...}` script.

    Args:
        script_text: The text content of one <script> block.

    Returns:
        The master playlist URL, or None if the script has no `window.configs =`.

    Raises:
        ParseError: If the assignment is present but its value is not a JSON
            object with a string `masterPlaylistUrl`.
    """
    if CONFIGS_MARKER not in script_text:
        return None

    payload = script_text.split(CONFIGS_MARKER, 1)[1].strip()
    try:
        configs, _ = json.JSONDecoder().raw_decode(payload)
    except json.JSONDecodeError as e:
        raise ParseError(f"window.configs is not valid JSON: {e}") from e

    master_url = configs.get(MASTER_PLAYLIST_FIELD) if isinstance(configs, dict) else None
    if not isinstance(master_url, str) or not master_url:
        raise ParseError(f"window.configs has no {MASTER_PLAYLIST_FIELD}")
    return master_url


def _find_master_manifest_url(html_content: str) -> Optional[str]:
    """(Helper Function) Scans the player page scripts; the last match wins."""
    soup = BeautifulSoup(html_content, 'html.parser')
    master_url = None
    for script in soup.find_all('script'):
        found = extract_master_manifest_url(script.string or '')
        if found:
            master_url = found
    return master_url


def parse_manifest(text: str, uri: str) -> m3u8.M3U8:
    """
    Parses HLS playlist text, resolving relative URIs against `uri`.

    Raises:
        ParseError: If the text is not an HLS playlist.
    """
    if not text.lstrip().startswith('#EXTM3U'):
        raise ParseError(f"{uri} is not an HLS playlist")
    try:
        return m3u8.loads(text, uri=uri)
    except (ValueError, IndexError, m3u8.ParseError) as e:
        raise ParseError(f"Could not parse playlist {uri}: {e}") from e


def select_rendition(manifest: m3u8.M3U8) -> Optional[Rendition]:
    """Returns the first 1920x1080 variant in playlist order, if any."""
    for playlist in manifest.playlists:
        resolution = playlist.stream_info.resolution
        if resolution and tuple(resolution) == TARGET_RESOLUTION:
            width, height = resolution
            return Rendition(width=width, height=height, uri=playlist.absolute_uri)
    return None


def resolve_stream(session: requests.Session, player_url: str) -> StreamResolution:
    """
    Follows a player page to the URL of its 1920x1080 media playlist.

    "Nothing usable" is reported through the outcome rather than an
    exception: the player page may lack the configs script (NO_MARKER), the
    configs or the master playlist may be unreadable (PARSE_FAILED), or no
    variant may match the target resolution (NO_MATCH).

    Args:
        session: The authenticated session.
        player_url: URL of the embedded player page.

    Returns:
        A StreamResolution whose `uri` is set only for FOUND.

    Raises:
        TransportError: If the player page or the master playlist can't be fetched.
    """
    response = fetch(session, player_url, 'player page')
    try:
        master_url = _find_master_manifest_url(response.text)
    except ParseError as e:
        logger.warning(f"Player configs on {player_url} could not be parsed: {e}")
        return StreamResolution(StreamOutcome.PARSE_FAILED, detail=str(e))

    if not master_url:
        logger.warning(f"No '{CONFIGS_MARKER}' script on player page {player_url}")
        return StreamResolution(StreamOutcome.NO_MARKER, detail=f"no '{CONFIGS_MARKER}' script on {player_url}")

    logger.info(f"📡 Fetching master playlist {master_url}")
    response = fetch(session, master_url, 'master playlist')
    try:
        manifest = parse_manifest(response.text, master_url)
    except ParseError as e:
        logger.warning(str(e))
        return StreamResolution(StreamOutcome.PARSE_FAILED, detail=str(e))

    if not manifest.is_variant:
        logger.warning(f"{master_url} is not a variant playlist")
        return StreamResolution(StreamOutcome.NO_MATCH, detail=f"{master_url} is not a variant playlist")

    rendition = select_rendition(manifest)
    if rendition is None:
        available = ', '.join(
            '{}x{}'.format(*p.stream_info.resolution) for p in manifest.playlists if p.stream_info.resolution
        ) or 'none'
        logger.warning(f"No 1920x1080 variant in {master_url} (available: {available})")
        return StreamResolution(StreamOutcome.NO_MATCH, detail=f"no 1920x1080 variant (available: {available})")

    return StreamResolution(StreamOutcome.FOUND, uri=rendition.uri)


def resolve_stream_url(session: requests.Session, player_url: str) -> Optional[str]:
    """Like resolve_stream, collapsed to the media playlist URL or None."""
    return resolve_stream(session, player_url).uri


def fetch_media_manifest(session: requests.Session, url: str) -> List[str]:
    """
    Fetches a media playlist and returns its segment URLs in playback order.

    Raises:
        ManifestNotFoundError: If `url` points at a master playlist instead.
    """
    response = fetch(session, url, 'media playlist')
    manifest = parse_manifest(response.text, url)
    if manifest.is_variant:
        raise ManifestNotFoundError(f"{url} is a master playlist, expected a media playlist")
    return [segment.absolute_uri for segment in manifest.segments]


def _fetch_segment(session: requests.Session, url: str) -> bytes:
    return fetch(session, url, 'segment').content


def _iter_segment_bodies(session: requests.Session, segments: List[str], workers: int) -> Iterator[bytes]:
    """
    (Helper Function) Yields segment bodies in playlist order.

    With more than one worker, up to `2 * workers` segments are fetched ahead
    on a thread pool; results are still handed out in playlist order.
    """
    if workers <= 1:
        for segment_url in segments:
            yield _fetch_segment(session, segment_url)
        return

    with ThreadPoolExecutor(max_workers=workers) as executor:
        pending = deque()
        try:
            for segment_url in segments:
                pending.append(executor.submit(_fetch_segment, session, segment_url))
                if len(pending) >= workers * 2:
                    yield pending.popleft().result()
            while pending:
                yield pending.popleft().result()
        finally:
            for future in pending:
                future.cancel()


def download_segments(
    session: requests.Session,
    segments: List[str],
    output_path: pathlib.Path,
    workers: int = 1,
) -> int:
    """
    Downloads every segment and concatenates them into `output_path`.

    The file is truncated first, so a rerun rewrites it. Segments are written
    verbatim in playlist order; no remuxing happens. If a fetch or write
    fails the partial file is left on disk. On Ctrl+C it is removed.

    Args:
        session: The authenticated session.
        segments: Absolute segment URLs in playback order.
        output_path: The file to write.
        workers: Number of concurrent segment fetches.

    Returns:
        The number of bytes written.

    Raises:
        TransportError: If a segment fetch fails.
        OSError: If the file can't be created or written.
    """
    output_path = pathlib.Path(output_path)
    try:
        output_path.parent.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        logger.warning(f"Could not create directory {output_path.parent}: {e}")

    total = len(segments)
    written = 0
    try:
        with open(output_path, 'wb') as f:
            for number, content in enumerate(_iter_segment_bodies(session, segments, workers), 1):
                f.write(content)
                written += len(content)
                logger.debug(f"Segment {number}/{total} written ({fmt_size(len(content))})")
    except KeyboardInterrupt:
        logger.warning(f"Interrupted, removing partial file {output_path}")
        output_path.unlink(missing_ok=True)
        raise

    return written


def build_output_path(job: DownloadJob) -> pathlib.Path:
    """Returns `<download_dir>/<category>/<index>. <title>.mp4` for a job."""
    title = sanitize_name(job.title) or f"Lesson {job.index}"
    return pathlib.Path(job.download_dir) / sanitize_name(job.category_name) / f"{job.index}. {title}.mp4"


def download_lesson(
    session: requests.Session,
    settings: Settings,
    category: Category,
    index: int,
    link: str,
) -> LessonResult:
    """
    Runs the full pipeline for one lesson: page, stream, media playlist, segments.

    Args:
        session: The authenticated session.
        settings: Run settings (root URL, download dir, workers, skip flag).
        category: The category the lesson belongs to.
        index: Zero-based position of the lesson inside its category.
        link: The lesson link from the listing page.

    Returns:
        A successful (possibly skipped) LessonResult.

    Raises:
        CmsError: If any step fails or no 1920x1080 stream is available.
        OSError: If the output file can't be written.
    """
    lesson = resolve_page(session, settings.root_url, link)
    job = DownloadJob(settings.download_dir, category.name, index, lesson.title)
    output_path = build_output_path(job)
    logger.info(f"---> Lesson {index}: {lesson.title} ({link})")

    if settings.skip_existing and output_path.is_file() and output_path.stat().st_size > 0:
        logger.info(f"⏭️ Already downloaded, skipping: {output_path.name}")
        return LessonResult(category.name, index, link, path=output_path, skipped=True)

    if not lesson.player_url:
        raise ManifestNotFoundError(f"No embedded player on lesson page {link}")

    resolution = resolve_stream(session, lesson.player_url)
    if resolution.outcome is not StreamOutcome.FOUND:
        raise ManifestNotFoundError(
            f"No selectable stream for '{lesson.title}' ({resolution.outcome.value}): {resolution.detail}"
        )

    segments = fetch_media_manifest(session, resolution.uri)
    logger.info(f"🎬 Downloading {len(segments)} segments to {output_path}")
    size = download_segments(session, segments, output_path, workers=settings.workers)
    logger.info(f"✅ Saved {output_path.name} ({fmt_size(size)})")

    return LessonResult(category.name, index, link, path=output_path)


def download_category(
    session: requests.Session,
    settings: Settings,
    category: Category,
    report: DownloadReport,
) -> None:
    """
    Downloads every lesson of a category, recording one result per lesson.

    A failing lesson is recorded and the next one continues, unless
    `settings.fail_fast` is set, in which case the error is re-raised.
    """
    logger.info(f"🚀 Downloading category {category.name}")
    try:
        links = discover_links(session, settings.root_url, category.url)
    except CmsError as e:
        if settings.fail_fast:
            raise
        logger.error(f"❌ Could not list category {category.name}: {e}")
        report.add(LessonResult(category.name, None, category.url, error=e))
        return

    if not links:
        logger.warning(f"⚠️ No lessons found in category {category.name}")

    for index, link in enumerate(links):
        try:
            result = download_lesson(session, settings, category, index, link)
        except (CmsError, OSError) as e:
            if settings.fail_fast:
                raise
            logger.error(f"❌ Lesson {index} ({link}) failed: {e}")
            result = LessonResult(category.name, index, link, error=e)
        report.add(result)


def run(
    settings: Settings,
    categories: List[Category],
    session: Optional[requests.Session] = None,
) -> DownloadReport:
    """
    Logs in, then downloads every category in order.

    Args:
        settings: Credentials, portal root and download options.
        categories: Categories to process, in order.
        session: Session to use; a new one is created when omitted.

    Returns:
        The DownloadReport with one entry per lesson.

    Raises:
        AuthenticationError: If login fails. Nothing else is requested then.
    """
    session = session or create_session()
    authenticate(session, settings)

    report = DownloadReport()
    for category in categories:
        download_category(session, settings, category, report)
    return report


def parse_category_option(value: str) -> Category:
    """Parses a `PATH=NAME` command line value into a Category."""
    url, sep, name = value.partition('=')
    if not sep or not url.strip() or not name.strip():
        raise click.BadParameter(f"expected PATH=NAME, got '{value}'", param_hint='--category')
    return Category(url=url.strip(), name=name.strip())


def load_categories_file(path: pathlib.Path) -> List[Category]:
    """
    Reads categories from a JSON file.

    The file holds a list of objects with `url` and `name` keys, e.g.
    `[{"url": "/teach/control/stream/view/id/1", "name": "Algebra"}]`.
    """
    try:
        with open(path, encoding='utf-8') as f:
            data = json.load(f)
    except json.JSONDecodeError as e:
        raise click.BadParameter(f"{path} is not valid JSON: {e}", param_hint='--categories-file') from e

    if not isinstance(data, list):
        raise click.BadParameter(f"{path} must contain a JSON list", param_hint='--categories-file')

    categories = []
    for entry in data:
        if not isinstance(entry, dict) or not entry.get('url') or not entry.get('name'):
            raise click.BadParameter(f"invalid category entry {entry!r} in {path}", param_hint='--categories-file')
        categories.append(Category(url=str(entry['url']), name=str(entry['name'])))
    return categories


@click.command()
@click.option('--email', envvar='EMAIL', prompt=True, help='Portal login email.')
@click.option('--password', envvar='PASSWORD', prompt=True, hide_input=True, help='Portal password.')
@click.option('--root-url', envvar='ROOT_URL', required=True, help='Portal root URL, e.g. https://school.example.com')
@click.option(
    '--download-dir',
    '-o',
    envvar='DOWNLOAD_DIR',
    default='download',
    type=click.Path(file_okay=False, path_type=pathlib.Path),
    help='Directory the category folders are created in.',
)
@click.option('--category', '-c', 'category_options', multiple=True, help='Category as PATH=NAME. Repeatable.')
@click.option(
    '--categories-file',
    type=click.Path(exists=True, dir_okay=False, path_type=pathlib.Path),
    help='JSON file with a list of {"url": ..., "name": ...} categories.',
)
@click.option('--workers', '-w', envvar='WORKERS', default=1, type=click.IntRange(min=1), help='Concurrent segment downloads per lesson.')
@click.option('--fail-fast', is_flag=True, help='Stop at the first failing lesson.')
@click.option('--skip-existing', is_flag=True, help='Skip lessons whose output file already exists.')
@click.option('--verbose', '-v', is_flag=True, help='Enable debug logging.')
def cli(
    email: str,
    password: str,
    root_url: str,
    download_dir: pathlib.Path,
    category_options: tuple,
    categories_file: Optional[pathlib.Path],
    workers: int,
    fail_fast: bool,
    skip_existing: bool,
    verbose: bool,
) -> None:
    """Download the lesson videos of GetCourse-style portal categories."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format='%(asctime)s %(levelname)s %(message)s',
    )

    categories = [parse_category_option(option) for option in category_options]
    if categories_file:
        categories.extend(load_categories_file(categories_file))
    if not categories:
        raise click.UsageError('Give at least one --category or a --categories-file.')

    settings = Settings(
        email=email,
        password=password,
        root_url=root_url,
        download_dir=download_dir,
        workers=workers,
        fail_fast=fail_fast,
        skip_existing=skip_existing,
    )

    try:
        report = run(settings, categories)
    except AuthenticationError as e:
        raise click.ClickException(f"Login failed: {e}") from e
    except (CmsError, OSError) as e:
        raise click.ClickException(str(e)) from e

    click.echo(report.summary())
    if report.has_failures:
        raise SystemExit(1)
    click.echo("🎉 Download finished for the selected categories!")


def main() -> None:
    """
    Entry point of the getcourse-dl command; reads a .env file first so its
    values reach the options' environment variables.
    """
    load_dotenv()
    cli()


if __name__ == "__main__":
    main()
