import html
import re
from typing import Iterable, Optional

from better_profanity import Profanity

from constants import PROFANITY_EXTRA_WORDS, PROFANITY_PLACEHOLDER
from logging_config import get_logger

logger = get_logger(__name__)

URL_REGEX = re.compile(r"https?://\S+")


class ProfanityFilter:
    def __init__(self, extra_words: Optional[Iterable[str]] = None, placeholder: str = PROFANITY_PLACEHOLDER):
        self.placeholder = placeholder
        self._profanity = Profanity()
        self._profanity.load_censor_words()
        words = list(PROFANITY_EXTRA_WORDS if extra_words is None else extra_words)
        if words:
            self._profanity.add_censor_words(words)
        logger.debug(f"Profanity filter loaded with {len(words)} extra words")

    def is_profane(self, text: str) -> bool:
        if not text:
            return False
        return self._profanity.contains_profanity(text)

    def clean(self, text: str) -> str:
        if not text:
            return text
        return self._profanity.censor(text, self.placeholder)

    def clean_preserving_urls(self, content: str) -> str:
        """Censor everything except URLs, which are copied through verbatim."""
        parts = []
        last_index = 0
        for match in URL_REGEX.finditer(content):
            parts.append(self.clean(content[last_index:match.start()]))
            parts.append(match.group(0))
            last_index = match.end()
        parts.append(self.clean(content[last_index:]))
        return "".join(parts)

    def sanitize(self, content: str) -> str:
        """The canonical stored form of user content: filtered, then HTML-escaped."""
        return html.escape(self.clean_preserving_urls(content), quote=True)
