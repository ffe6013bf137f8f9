"""Deterministic message checks: direct address and trivial acknowledgments."""

import re
from typing import List

from rapidfuzz import fuzz, process

# Whole messages that never warrant a reply. Answers such as "yes" or "sure"
# may settle a question an agent asked, so the backend decides those.
ACKNOWLEDGMENTS = {
    "ok", "okay", "k", "kk", "okie", "alright", "alrighty",
    "thanks", "thank you", "thankyou", "thx", "ty", "tysm", "cheers",
    "ok thanks", "ok thank you", "okay thanks", "okay thank you",
    "thanks a lot", "thank you so much", "many thanks",
    "got it", "gotcha", "cool", "nice", "awesome",
    "sounds good", "noted", "understood", "makes sense",
    "lol", "haha", "hmm",
    "bye", "goodbye", "see ya", "good night",
}

# Words that may be freely combined into an acknowledgment
ACK_TOKENS = {
    "ok", "okay", "k", "thanks", "thank", "you", "thx", "ty", "cool", "nice",
    "got", "it", "alright", "awesome", "cheers", "so", "much", "a", "lot",
    "guys", "all", "lol", "haha",
}

MAX_ACK_TOKENS = 5
NAME_MATCH_THRESHOLD = 88

_WORD = re.compile(r"[\w'’]+", re.UNICODE)
_POSSESSIVE = re.compile(r"['’]s$")


def _tokens(text: str) -> List[str]:
    tokens = []
    for word in _WORD.findall(text.lower()):
        word = _POSSESSIVE.sub("", word).strip("'’")
        if word:
            tokens.append(word)
    return tokens


def is_trivial_acknowledgment(text: str) -> bool:
    """
    Whether a message is a bare acknowledgment such as "ok thanks".

    Questions never are. Text in any script is tokenized, so only a
    message without a single word character (punctuation, emoji) is
    trivial by having no words.
    """
    if "?" in text:
        return False

    tokens = _tokens(text)
    if not tokens:
        # Punctuation or emoji only, e.g. "👍" or "!!"
        return bool(text.strip())

    normalized = " ".join(tokens)
    if normalized in ACKNOWLEDGMENTS:
        return True

    return len(tokens) <= MAX_ACK_TOKENS and all(token in ACK_TOKENS for token in tokens)


def mentions_name(text: str, name: str) -> bool:
    """
    Whether ``text`` addresses the participant called ``name``.

    Matches the full name, or any name word of three or more letters,
    with a fuzzy score to tolerate typos and possessives ("Tinas",
    "Sam's", "@tina"). Works for names in any script.
    """
    text_tokens = _tokens(text)
    name_tokens = _tokens(name)
    if not text_tokens or not name_tokens:
        return False

    full_name = " ".join(name_tokens)
    if len(name_tokens) > 1 and fuzz.partial_ratio(full_name, " ".join(text_tokens)) >= NAME_MATCH_THRESHOLD:
        return True

    for name_token in name_tokens:
        if len(name_token) < 3:
            continue
        match = process.extractOne(
            name_token,
            text_tokens,
            scorer=fuzz.ratio,
            score_cutoff=NAME_MATCH_THRESHOLD
        )
        if match:
            return True

    return False
