"""Declarative intent patterns.

Patterns are tried in order; the first one whose keyword set and regex
both match the lowercased text decides the intent.  Order matters: more
specific patterns (``code.run_tests``) come before broader ones in the
same category.
"""

import re
from dataclasses import dataclass, field


@dataclass(frozen=True)
class IntentPattern:
    """A rule mapping text to a (category, subcategory) intent.

    A pattern matches when at least one keyword is a substring of the
    lowercased text and, if ``regex`` is set, the regex also matches.
    """

    id: str
    category: str
    subcategory: str
    keywords: tuple[str, ...] = ()
    regex: re.Pattern[str] | None = None
    confidence: float = 0.9
    tier: int = 0

    def matches(self, text: str) -> bool:
        msg = text.lower()
        if self.keywords and not any(kw in msg for kw in self.keywords):
            return False
        if self.regex is not None:
            return self.regex.search(msg) is not None
        return True


def _p(
    pattern_id: str,
    category: str,
    subcategory: str,
    keywords: list[str],
    regex: str | None,
    confidence: float,
    tier: int,
) -> IntentPattern:
    return IntentPattern(
        id=pattern_id,
        category=category,
        subcategory=subcategory,
        keywords=tuple(kw.lower() for kw in keywords),
        regex=re.compile(regex, re.IGNORECASE) if regex else None,
        confidence=confidence,
        tier=tier,
    )


DEFAULT_PATTERNS: tuple[IntentPattern, ...] = (
    # -- code ----------------------------------------------------------------
    _p("code_run_tests", "code", "run_tests",
       ["run", "test", "tests", "spec"],
       r"(run|execute).*(test|spec)", 0.95, 0),
    _p("code_fix_tests", "code", "fix_tests",
       ["fix", "failing", "broken", "test", "tests"],
       r"(fix|debug|repair).*(test|spec|failing|broken)", 0.9, 2),
    _p("code_analyze", "code", "analyze",
       ["analyze", "review", "audit", "inspect"],
       r"(analyze|review|audit|inspect).*(code|codebase|repository)", 0.85, 2),
    _p("code_explain", "code", "explain",
       ["explain", "what", "how", "does", "work"],
       r"(explain|what|how).*(code|function|this|do|work)", 0.8, 2),
    _p("code_write", "code", "write",
       ["write", "create", "generate", "implement"],
       r"(write|create|generate|implement).*(function|code|class|handler)", 0.85, 3),
    _p("code_refactor", "code", "refactor",
       ["refactor", "clean up", "reorganize", "improve"],
       r"(refactor|clean.*up|reorganize|improve).*(code|function)", 0.85, 2),
    _p("code_git_op", "code", "git_op",
       ["commit", "push", "pull", "clone", "git"],
       r"\b(git|commit|push|pull|clone)\b", 0.95, 0),
    _p("code_git_status", "code", "git_op",
       ["status", "git", "changed", "modified"],
       r"(git.*status|status.*git|what.*changed|modified.*file)", 0.9, 0),
    _p("code_git_diff", "code", "git_op",
       ["diff", "changes", "what changed"],
       r"(show.*diff|\bdiff\b|what.*change)", 0.9, 0),
    # -- file ----------------------------------------------------------------
    _p("file_read", "file", "read",
       ["show", "read", "display", "open", "view"],
       r"\b(show|read|display|open|view)\b.*(file|\.\w+)", 0.9, 0),
    _p("file_search", "file", "search",
       ["search", "find", "look for", "grep"],
       r"(search|find|grep|look.*for).*\b(file|files|in)\b", 0.9, 0),
    _p("file_write", "file", "write",
       ["create", "write", "save", "add to"],
       r"(create|write|save).*(file|new\s+\w+\.\w+|\.\w+)", 0.9, 0),
    _p("file_delete", "file", "delete",
       ["delete", "remove", "rm"],
       r"\b(delete|remove|rm)\b.*(file|\.\w+)", 0.9, 0),
    _p("file_list", "file", "list",
       ["list", "ls", "show all", "what files"],
       r"(\blist\b|\bls\b|show.*all|what.*files)", 0.9, 0),
    # -- research ------------------------------------------------------------
    _p("research_web_search", "research", "web_search",
       ["search", "google", "look up", "find info"],
       r"(search|google|look.*up|find.*info).*\b(for|about)\b", 0.85, 2),
    _p("research_fetch_url", "research", "fetch_url",
       ["summarize", "read", "fetch", "scrape"],
       r"(summarize|read|fetch|scrape).*(https?://\S+)", 0.95, 2),
    _p("research_compare", "research", "compare",
       ["compare", "difference", "versus", " vs"],
       r"(compare|difference|versus|\bvs\b).*\b(and|vs|versus|between)\b", 0.85, 2),
    # -- task ----------------------------------------------------------------
    _p("task_create", "task", "create",
       ["add", "create", "remind", "task", "todo"],
       r"(add|create|remind|set).*(task|todo|reminder)", 0.9, 0),
    _p("task_list", "task", "list",
       ["show", "list", "what", "my tasks"],
       r"(show|list|what).*(task|todo)", 0.9, 0),
    _p("task_complete", "task", "complete",
       ["complete", "done", "finish", "mark"],
       r"(complete|done|finish|mark.*done).*(task|todo)", 0.9, 0),
    # -- calendar ------------------------------------------------------------
    _p("calendar_check", "calendar", "check",
       ["calendar", "schedule", "meeting", "what's on", "do i have"],
       r"(what'?s.*on|do.*have|calendar|schedule|meeting).*(today|tomorrow|this week|next)",
       0.9, 0),
    _p("calendar_schedule", "calendar", "schedule",
       ["schedule", "set up", "book", "meeting"],
       r"(schedule|set.*up|book).*(meeting|call)", 0.85, 2),
    _p("calendar_cancel", "calendar", "cancel",
       ["cancel", "remove", "meeting"],
       r"(cancel|remove).*(meeting|appointment)", 0.9, 0),
    # -- system --------------------------------------------------------------
    _p("system_status", "system", "status",
       ["status", "how are you", "are you working"],
       r"(\bstatus\b|how are you|are you.*working|you.*\bok\b)", 0.95, 0),
    _p("system_cost", "system", "cost",
       ["cost", "spending", "budget", "saved", "usage"],
       r"(cost|spending|budget|saved|usage).*(month|today|this)", 0.95, 0),
    _p("system_help", "system", "help",
       ["help", "how do i", "can you"],
       r"(help|how.*do.*i|can.*you).*(do|use|work)", 0.8, 1),
    # -- chat ----------------------------------------------------------------
    _p("chat_question", "chat", "question",
       ["what", "how", "why", "when", "where", "who"],
       r"^(what|how|why|when|where|who).*\b(is|are|do|did|can|will)\b", 0.6, 2),
    _p("chat_creative", "chat", "creative",
       ["write", "story", "poem", "joke", "creative"],
       r"(write|tell|create).*(story|poem|joke)", 0.85, 3),
)

KNOWN_CATEGORIES = frozenset(
    {"code", "file", "research", "task", "calendar", "system", "chat"}
)


def match_first(patterns: tuple[IntentPattern, ...] | list[IntentPattern], text: str) -> IntentPattern | None:
    """Return the first pattern matching *text*, or None."""
    for pattern in patterns:
        if pattern.matches(text):
            return pattern
    return None
