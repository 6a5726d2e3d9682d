"""
Similarity Evaluation Service
Scores actual responses against expected ones

Three tiers, tried in order:
  1. semantic  - the chat collaborator judges the pair and returns a score
  2. enhanced  - weighted blend of edit distance, word overlap and length ratio
  3. basic     - normalized edit distance only
"""
import re
from typing import NamedTuple, Optional
import logging
from copilot_eval.config.settings import settings
from copilot_eval.models.copilot import ChatRequest, LocationHint
from copilot_eval.services.copilot_service import ChatClient
from copilot_eval.utils.helpers import new_request_id, truncate

logger = logging.getLogger(__name__)

EDIT_WEIGHT = 0.5
KEYWORD_WEIGHT = 0.3
LENGTH_WEIGHT = 0.2

_NUMBER = r"(\d+\.?\d*)"
_SCORE_PREFIXES = ("score:", "similarity:", "rating:")
_REASONING_PREFIXES = ("reasoning:", "explanation:", "analysis:")
_DIFFERENCES_PREFIXES = ("differences:", "key differences:")
# (pattern, fixed divisor or None to infer the scale from the value)
_FALLBACK_PATTERNS = [
    (re.compile(_NUMBER + r"/10", re.IGNORECASE), 10.0),
    (re.compile(_NUMBER + r"%", re.IGNORECASE), 100.0),
    (re.compile(_NUMBER + r"\s*out\s*of\s*10", re.IGNORECASE), 10.0),
    (re.compile(_NUMBER + r"\s*/\s*1\.?0?", re.IGNORECASE), None),
    (re.compile(_NUMBER), None),
]


class SimilarityBreakdown(NamedTuple):
    score: float
    edit_similarity: float
    keyword_overlap: float
    length_ratio: float


class JudgeVerdict(NamedTuple):
    score: Optional[float]
    reasoning: str
    differences: str


class SimilarityOutcome(NamedTuple):
    score: float
    reasoning: str
    differences: str
    method: str  # semantic | enhanced | basic | trivial


def levenshtein_distance(s1: str, s2: str) -> int:
    """Minimum number of single-character edits turning s1 into s2"""
    if len(s1) < len(s2):
        s1, s2 = s2, s1
    previous = list(range(len(s2) + 1))
    for i, c1 in enumerate(s1, 1):
        current = [i]
        for j, c2 in enumerate(s2, 1):
            cost = 0 if c1 == c2 else 1
            current.append(min(previous[j] + 1, current[j - 1] + 1, previous[j - 1] + cost))
        previous = current
    return previous[-1]


def basic_similarity(expected: str, actual: str) -> float:
    """1 - levenshtein / longer length, case-insensitive"""
    if not expected and not actual:
        return 1.0
    if not expected or not actual:
        return 0.0
    distance = levenshtein_distance(expected.lower(), actual.lower())
    return 1.0 - distance / max(len(expected), len(actual))


def enhanced_similarity(expected: str, actual: str) -> SimilarityBreakdown:
    """
    Weighted heuristic score with its components

    0.5 * edit similarity + 0.3 * word-set Jaccard + 0.2 * length ratio,
    capped at 1.0.
    """
    if not expected and not actual:
        return SimilarityBreakdown(1.0, 1.0, 1.0, 1.0)
    if not expected or not actual:
        return SimilarityBreakdown(0.0, 0.0, 0.0, 0.0)

    edit = basic_similarity(expected, actual)

    expected_words = set(expected.lower().split())
    actual_words = set(actual.lower().split())
    union = expected_words | actual_words
    keyword = len(expected_words & actual_words) / len(union) if union else 0.0

    length = min(len(expected), len(actual)) / max(len(expected), len(actual))

    score = EDIT_WEIGHT * edit + KEYWORD_WEIGHT * keyword + LENGTH_WEIGHT * length
    return SimilarityBreakdown(min(1.0, max(0.0, round(score, 6))), edit, keyword, length)


def _normalize(value: float, divisor: Optional[float] = None) -> float:
    if divisor is not None:
        value = value / divisor
    elif 1.0 < value <= 10.0:
        value = value / 10.0
    elif value > 10.0:
        value = value / 100.0
    return max(0.0, min(1.0, value))


def _after_colon(line: str) -> str:
    return line[line.index(':') + 1:].strip()


def parse_judge_response(text: str) -> JudgeVerdict:
    """
    Extract score, reasoning and differences from a judge reply

    Structured "Score:" lines win; otherwise the whole text is searched for
    "N/10", "N%", "N out of 10", "N/1" and finally any number. Scores on a
    0-10 or 0-100 scale are brought back to [0, 1].

    Returns:
        JudgeVerdict whose score is None when the text holds no number
    """
    score = None
    reasoning = "Unable to parse reasoning"
    differences = "Unable to parse differences"

    for line in (text or "").splitlines():
        stripped = line.strip()
        lowered = stripped.lower()
        if lowered.startswith(_SCORE_PREFIXES):
            match = re.search(_NUMBER, _after_colon(stripped))
            if match:
                score = _normalize(float(match.group(1)))
            else:
                logger.warning(f"Could not parse score from: '{truncate(stripped, 100)}'")
        elif lowered.startswith(_REASONING_PREFIXES):
            reasoning = _after_colon(stripped)
        elif lowered.startswith(_DIFFERENCES_PREFIXES):
            differences = _after_colon(stripped)

    if score is None:
        for pattern, divisor in _FALLBACK_PATTERNS:
            match = pattern.search(text or "")
            if match:
                score = _normalize(float(match.group(1)), divisor)
                logger.info(f"Fallback score {score} extracted using pattern {pattern.pattern}")
                break

    return JudgeVerdict(score, reasoning, differences)


def build_judge_prompt(expected: str, actual: str, additional_instructions: Optional[str] = None) -> str:
    """Prompt asking the chat collaborator to grade semantic equivalence"""
    prompt = f"""You are an expert evaluator. Please compare these two responses and determine if they provide semantically equivalent answers.

Expected Response: "{expected}"
Actual Response: "{actual}"

Please analyze the semantic similarity and respond with EXACTLY this format (no additional text before or after):

Score: [number between 0.0 and 1.0]
Reasoning: [brief explanation of your evaluation]
Differences: [key differences, or 'None' if semantically equivalent]

Scoring guide:
- 1.0 = Semantically identical (same meaning, even if different wording)
- 0.8-0.9 = Very similar meaning with minor differences
- 0.5-0.7 = Partially similar but notable differences in meaning
- 0.2-0.4 = Different meanings but some related concepts
- 0.0-0.1 = Completely different meanings

Focus on semantic meaning rather than exact word matching. Start your response with 'Score:'"""
    if additional_instructions and additional_instructions.strip():
        prompt = f"{additional_instructions.strip()}\n\n{prompt}"
    return prompt


class SimilarityScorer:
    """
    Scores expected/actual pairs, degrading through the three tiers

    The semantic tier needs a chat client; without one, or when the judge
    reply carries no number, the enhanced heuristic is used.
    """

    def __init__(self, chat_client: Optional[ChatClient] = None, auth_token: Optional[str] = None,
                 time_zone: Optional[str] = None):
        self.chat_client = chat_client
        self.auth_token = auth_token
        self.time_zone = time_zone or settings.COPILOT_TIMEZONE

    async def score(self, expected: str, actual: str, use_semantic: bool = True,
                    additional_instructions: Optional[str] = None) -> SimilarityOutcome:
        expected = expected or ""
        actual = actual or ""
        if not expected and not actual:
            return SimilarityOutcome(1.0, "Both responses are empty", "None", "trivial")
        if not expected or not actual:
            missing = "Expected" if not expected else "Actual"
            return SimilarityOutcome(0.0, f"{missing} response is empty", f"{missing} response is empty", "trivial")
        if expected == actual:
            return SimilarityOutcome(1.0, "Responses are identical", "None", "trivial")

        request_id = new_request_id()
        if use_semantic and self.chat_client is not None:
            outcome = await self._semantic(expected, actual, additional_instructions, request_id)
            if outcome is not None:
                return outcome

        try:
            breakdown = enhanced_similarity(expected, actual)
            logger.debug(f"[Similarity {request_id}] Enhanced similarity - edit: {breakdown.edit_similarity:.3f}, "
                         f"keywords: {breakdown.keyword_overlap:.3f}, length: {breakdown.length_ratio:.3f}, "
                         f"final: {breakdown.score:.3f}")
            return SimilarityOutcome(
                breakdown.score,
                "Heuristic similarity of wording, vocabulary and length",
                (f"Edit similarity {breakdown.edit_similarity:.2f}, word overlap {breakdown.keyword_overlap:.2f}, "
                 f"length ratio {breakdown.length_ratio:.2f}"),
                "enhanced",
            )
        except Exception as e:
            logger.error(f"[Similarity {request_id}] Enhanced similarity failed, using basic: {e}")
            score = basic_similarity(expected, actual)
            return SimilarityOutcome(score, "Edit-distance similarity", f"Edit similarity {score:.2f}", "basic")

    async def _semantic(self, expected: str, actual: str, additional_instructions: Optional[str],
                        request_id: str) -> Optional[SimilarityOutcome]:
        try:
            conversation_id = await self.chat_client.create_conversation(self.auth_token)
            reply = await self.chat_client.chat(
                self.auth_token,
                conversation_id,
                ChatRequest(
                    text=build_judge_prompt(expected, actual, additional_instructions),
                    location_hint=LocationHint(time_zone=self.time_zone),
                ),
            )
        except Exception as e:
            logger.warning(f"[Similarity {request_id}] Semantic evaluation failed, falling back to heuristic: {e}")
            return None

        verdict = parse_judge_response(reply.reply_text)
        if verdict.score is None:
            logger.warning(f"[Similarity {request_id}] Judge reply had no score: '{truncate(reply.reply_text, 100)}'")
            return None
        logger.info(f"[Similarity {request_id}] Semantic score {verdict.score:.4f}")
        return SimilarityOutcome(verdict.score, verdict.reasoning, verdict.differences, "semantic")
