"""Variable extraction from free text.

Pulls the arguments a capability call needs (paths, URLs, queries,
task ids, times...) out of the user's message, keyed by intent category.
"""

import logging
import re

logger = logging.getLogger(__name__)

URL_RE = re.compile(r"https?://\S+")
QUOTED_RE = re.compile(r"[\"'](.+?)[\"']")
QUOTED_FILENAME_RE = re.compile(r"[\"']([\w\-.]+\.\w+)[\"']")
SEARCH_PATTERN_RE = re.compile(r"(?:\bfor|\bcontaining)\s+[\"']?([^\"'\s]+)", re.IGNORECASE)
EXTENSION_GLOB_RE = re.compile(r"\*\.(\w+)")
EXTENSION_WORD_RE = re.compile(r"\b(\w{1,5})\s+files?\b", re.IGNORECASE)
DIR_RE = re.compile(r"\b(?:in|at|from)\s+([\w\-./~]+)", re.IGNORECASE)
FUNCTION_RE = re.compile(r"\b(?:function|method|class)\s+[\"']?(\w+)", re.IGNORECASE)
COMMIT_QUOTED_RE = re.compile(r"commit.*?[\"'](.+?)[\"']", re.IGNORECASE)
COMMIT_TAIL_RE = re.compile(r"(?:commit|with message)\s+(.+)", re.IGNORECASE)
QUERY_RE = re.compile(r"\b(?:search|for|about)\s+(.+)", re.IGNORECASE)
TASK_TAIL_RE = re.compile(r"\b(?:add|create|task|todo)\s+(.+)", re.IGNORECASE)
TASK_ID_RE = re.compile(r"\b(?:task|todo)\s*#?(\d+)", re.IGNORECASE)
TIME_RE = re.compile(
    r"(?:\bat|@)\s*(\d{1,2}(?::\d{2})?\s*(?:am|pm|today|tomorrow))", re.IGNORECASE
)
MEETING_TAIL_RE = re.compile(r"\b(?:meeting|call|schedule)\s+(.+)", re.IGNORECASE)
TIME_WORDS_RE = re.compile(
    r"\b(at|today|tomorrow|am|pm|\d{1,2}(?::\d{2})?(?:am|pm)?)\b", re.IGNORECASE
)

_PATH_TOKEN_RE = re.compile(r"^(?:~|\.{1,2})?/?[\w\-.]+(?:/[\w\-.]*)*$")
_HAS_EXTENSION_RE = re.compile(r"[\w\-]\.([A-Za-z]\w{0,9})$")
_NON_EXTENSION_WORDS = frozenset({"all", "the", "my", "some", "any", "new", "what", "which", "these"})


def extract_url(text: str) -> str:
    match = URL_RE.search(text)
    return match.group(0).rstrip(".,;)") if match else ""


def extract_quoted(text: str) -> str:
    match = QUOTED_RE.search(text)
    return match.group(1) if match else ""


def extract_path(text: str) -> str:
    """Find the most likely file path in *text*.

    A token counts as a path if it contains a slash or ends in a file
    extension; the last such token wins.  Falls back to a quoted
    filename.
    """
    candidates: list[str] = []
    for raw in text.split():
        if URL_RE.match(raw):
            continue
        token = raw.strip("\"'`,;:()[]!?")
        token = token.rstrip(".")
        if not token or not _PATH_TOKEN_RE.match(token):
            continue
        if "/" in token or _HAS_EXTENSION_RE.search(token):
            candidates.append(token)
    if candidates:
        return candidates[-1]

    match = QUOTED_FILENAME_RE.search(text)
    return match.group(1) if match else ""


def extract_extension(text: str, path: str = "") -> str:
    if path:
        match = _HAS_EXTENSION_RE.search(path)
        if match:
            return match.group(1)
    match = EXTENSION_GLOB_RE.search(text)
    if match:
        return match.group(1)
    match = EXTENSION_WORD_RE.search(text)
    if match and match.group(1).lower() not in _NON_EXTENSION_WORDS:
        return match.group(1).lower()
    return ""


def extract_search_pattern(text: str) -> str:
    quoted = extract_quoted(text)
    if quoted:
        return quoted
    match = SEARCH_PATTERN_RE.search(text)
    return match.group(1) if match else ""


def extract_commit_message(text: str) -> str:
    match = COMMIT_QUOTED_RE.search(text)
    if match:
        return match.group(1)
    match = COMMIT_TAIL_RE.search(text)
    return match.group(1).strip().strip('"') if match else ""


def extract_query(text: str) -> str:
    match = QUERY_RE.search(text)
    return match.group(1).rstrip("?!.").strip() if match else ""


def extract_task_description(text: str) -> str:
    quoted = extract_quoted(text)
    if quoted:
        return quoted
    match = TASK_TAIL_RE.search(text)
    return match.group(1).strip() if match else ""


def extract_time(text: str) -> str:
    match = TIME_RE.search(text)
    if match:
        return match.group(1)
    lowered = text.lower()
    if "today" in lowered:
        return "today"
    if "tomorrow" in lowered:
        return "tomorrow"
    return ""


def extract_meeting_title(text: str) -> str:
    quoted = extract_quoted(text)
    if quoted:
        return quoted
    match = MEETING_TAIL_RE.search(text)
    if not match:
        return ""
    title = TIME_WORDS_RE.sub("", match.group(1))
    return " ".join(title.split())


def _file_variables(text: str) -> dict[str, str]:
    variables: dict[str, str] = {}
    path = extract_path(text)
    if path:
        variables["path"] = path
    pattern = extract_search_pattern(text)
    if pattern:
        variables["pattern"] = pattern.strip('"')
    extension = extract_extension(text, path)
    if extension:
        variables["extension"] = extension
    return variables


def _code_variables(text: str) -> dict[str, str]:
    variables: dict[str, str] = {}
    match = DIR_RE.search(text)
    if match:
        variables["dir"] = match.group(1)
    match = FUNCTION_RE.search(text)
    if match:
        variables["function"] = match.group(1)
    test = extract_quoted(text)
    if test:
        variables["test"] = test
    message = extract_commit_message(text)
    if message:
        variables["message"] = message
    path = extract_path(text)
    if path:
        variables["path"] = path
    return variables


def _research_variables(text: str) -> dict[str, str]:
    variables: dict[str, str] = {}
    url = extract_url(text)
    if url:
        variables["url"] = url
    query = extract_query(text)
    if query:
        variables["query"] = query
    return variables


def _task_variables(text: str) -> dict[str, str]:
    variables: dict[str, str] = {}
    task = extract_task_description(text)
    if task:
        variables["task"] = task
    match = TASK_ID_RE.search(text)
    if match:
        variables["id"] = match.group(1)
    return variables


def _calendar_variables(text: str) -> dict[str, str]:
    variables: dict[str, str] = {}
    when = extract_time(text)
    if when:
        variables["time"] = when
    title = extract_meeting_title(text)
    if title:
        variables["title"] = title
    return variables


_CATEGORY_EXTRACTORS = {
    "file": _file_variables,
    "code": _code_variables,
    "research": _research_variables,
    "task": _task_variables,
    "calendar": _calendar_variables,
}


def extract_variables(text: str, category: str) -> dict[str, str]:
    """Extract variables relevant to *category* from *text*.

    Category-specific extraction runs first; a URL and quoted text are
    added for every category when present and not already set.
    """
    extractor = _CATEGORY_EXTRACTORS.get(category)
    variables = extractor(text) if extractor else {}

    url = extract_url(text)
    if url:
        variables.setdefault("url", url)
    quoted = extract_quoted(text)
    if quoted:
        variables.setdefault("quoted", quoted)
    return variables
