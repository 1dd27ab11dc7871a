"""Structural contracts for the chat web apps the normalizer understands.

Each profile lists CSS selectors (evaluated by soupsieve through
BeautifulSoup) for the conversation root, the message elements and their
roles, plus the labels and naming defaults used by the encoders.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from urllib.parse import urlparse


@dataclass(frozen=True)
class SiteProfile:
    """Selectors and labels for one chat application."""

    key: str
    root_selectors: tuple[str, ...]
    turn_selector: str
    fallback_selectors: tuple[str, ...]
    user_selector: str
    assistant_selector: str
    user_content_selector: str = ""
    assistant_content_selector: str = ""
    title_selector: str = ""
    title_strip_regex: re.Pattern[str] | None = None
    default_title: str = "Conversation"
    export_base_name: str = "chat-export"
    role_labels: dict[str, str] = field(
        default_factory=lambda: {"user": "You", "assistant": "Assistant", "system": "System"}
    )
    hosts: tuple[str, ...] = ()

    def role_label(self, role: str) -> str:
        return self.role_labels.get(role, role.capitalize())

    def matches_host(self, host: str) -> bool:
        host = host.lower()
        return any(host == h or host.endswith(f".{h}") for h in self.hosts)


CHATGPT = SiteProfile(
    key="chatgpt",
    root_selectors=(
        '[data-testid="conversation-main"]',
        '[data-testid="conversation-container"]',
        "main",
    ),
    turn_selector='[data-testid^="conversation-turn-"], article',
    fallback_selectors=('[data-testid^="conversation-turn-"]', "[data-message-author-role]", "article"),
    user_selector='[data-message-author-role="user"]',
    assistant_selector='[data-message-author-role="assistant"]',
    user_content_selector='[data-message-author-role="user"]',
    assistant_content_selector=".markdown, .prose, .text-message",
    title_strip_regex=re.compile(r"\s*-\s*ChatGPT.*", re.IGNORECASE),
    default_title="ChatGPT Conversation",
    export_base_name="chatgpt-export",
    role_labels={"user": "You", "assistant": "ChatGPT", "system": "System"},
    hosts=("chatgpt.com", "chat.openai.com"),
)

CLAUDE = SiteProfile(
    key="claude",
    root_selectors=(
        "main [data-test-render-count]",
        'main [data-testid="conversation"]',
        'main [data-testid="chat-messages"]',
        '[data-testid="conversation"]',
        '[data-testid="chat-messages"]',
        "main",
    ),
    turn_selector=(
        '[data-testid="user-message"], [data-testid*="assistant-message"], '
        "div.font-user-message, div.font-claude-message, [data-author-role], "
        "[data-message-author-role]"
    ),
    fallback_selectors=(
        '[data-testid="user-message"]',
        '[data-testid*="assistant-message"]',
        "[data-test-render-count] > div",
        "article",
    ),
    user_selector=(
        '[data-testid="user-message"], div.font-user-message, '
        '[data-author-role="user"], [data-message-author-role="user"]'
    ),
    assistant_selector=(
        '[data-testid*="assistant-message"], div.font-claude-message, '
        '[data-author-role="assistant"], [data-message-author-role="assistant"]'
    ),
    title_selector='[data-testid="chat-title-button"] .truncate',
    title_strip_regex=re.compile(r"\s*[-|]\s*Claude.*", re.IGNORECASE),
    default_title="Claude Conversation",
    export_base_name="claude-export",
    role_labels={"user": "You", "assistant": "Claude", "system": "System"},
    hosts=("claude.ai",),
)

GEMINI = SiteProfile(
    key="gemini",
    root_selectors=(
        '[data-test-id="chat-history-container"]',
        "#chat-history",
        ".chat-history",
        "main",
    ),
    turn_selector="user-query, model-response",
    fallback_selectors=("user-query", "model-response", '[data-test-id*="message"]', ".conversation-turn"),
    user_selector="user-query",
    assistant_selector="model-response",
    user_content_selector=".query-content, .query-text",
    assistant_content_selector="message-content, .markdown",
    title_selector='div[data-test-id="conversation"].selected .conversation-title',
    title_strip_regex=re.compile(r"^Gemini\s*-\s*", re.IGNORECASE),
    default_title="Gemini Conversation",
    export_base_name="gemini-export",
    role_labels={"user": "You", "assistant": "Gemini", "system": "System"},
    hosts=("gemini.google.com",),
)

GROK = SiteProfile(
    key="grok",
    root_selectors=(
        '[data-testid="conversation"]',
        '[data-testid="chat-history"]',
        '[data-testid*="conversation"]',
        "main",
    ),
    turn_selector='[data-testid*="message"], [data-role], [data-message-author-role], .message',
    fallback_selectors=("[data-role]", "[data-message-author-role]", '[data-testid*="message"]', "article"),
    user_selector='[data-role="user"], [data-message-author-role="user"], .message.user, .user-message',
    assistant_selector=(
        '[data-role="assistant"], [data-message-author-role="assistant"], '
        ".message.assistant, .assistant-message, .ai-message"
    ),
    assistant_content_selector=".markdown",
    user_content_selector=".markdown",
    title_strip_regex=re.compile(r"\s*[-|]\s*Grok.*", re.IGNORECASE),
    default_title="Grok Conversation",
    export_base_name="grok-export",
    role_labels={"user": "You", "assistant": "Grok", "system": "System"},
    hosts=("grok.com",),
)

GENERIC = SiteProfile(
    key="generic",
    root_selectors=(
        "[data-conversation-root]",
        '[data-testid*="conversation"]',
        "#chat-history",
        ".chat-history",
        '[role="main"]',
        "main",
    ),
    turn_selector=(
        "[data-message-author-role], [data-author-role], [data-role], "
        "user-query, model-response, article, .message"
    ),
    fallback_selectors=('[data-testid*="message"]', ".chat-message", ".conversation-turn"),
    user_selector=(
        '[data-message-author-role="user"], [data-author-role="user"], '
        '[data-role="user"], .user-message, .message.user'
    ),
    assistant_selector=(
        '[data-message-author-role="assistant"], [data-author-role="assistant"], '
        '[data-role="assistant"], .assistant-message, .message.assistant'
    ),
)

PROFILES: dict[str, SiteProfile] = {
    profile.key: profile for profile in (CHATGPT, CLAUDE, GEMINI, GROK, GENERIC)
}


def get_profile(key: str) -> SiteProfile:
    """Return the profile registered under ``key`` (generic when unknown)."""
    return PROFILES.get(key.lower().strip(), GENERIC)


def detect_profile(source_url: str, default: str = "generic") -> SiteProfile:
    """Pick the profile whose host list matches ``source_url``."""
    host = urlparse(source_url).hostname or ""
    if host:
        for profile in PROFILES.values():
            if profile.matches_host(host):
                return profile
    return get_profile(default)
