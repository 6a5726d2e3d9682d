"""
Utility helper functions
Common functionality used across the job pipeline
"""
from datetime import datetime, timezone
from io import StringIO
from typing import Dict, List, Mapping, Optional, Sequence, Tuple
import logging
import uuid

import pandas as pd

logger = logging.getLogger(__name__)

# Built-in dataset used when a job's input cannot be resolved
SAMPLE_ROWS: List[Dict[str, str]] = [
    {"prompt": "What is the capital of France?", "expected_response": "Paris"},
    {
        "prompt": "Explain quantum computing in simple terms",
        "expected_response": "Quantum computing uses quantum bits that can be in multiple states simultaneously",
    },
    {
        "prompt": "What are the benefits of renewable energy?",
        "expected_response": "Renewable energy is clean, sustainable, and reduces carbon emissions",
    },
    {
        "prompt": "How does machine learning work?",
        "expected_response": "Machine learning uses algorithms to learn patterns from data",
    },
    {
        "prompt": "What is the difference between AI and ML?",
        "expected_response": "AI is the broader concept while ML is a subset focused on learning from data",
    },
]


def utcnow() -> datetime:
    """Timezone-aware current UTC time"""
    return datetime.now(timezone.utc)


def new_request_id() -> str:
    """Short id used to correlate the log lines of one invocation"""
    return uuid.uuid4().hex[:8]


def sample_rows() -> List[Dict[str, str]]:
    """Fresh copy of the built-in sample dataset"""
    return [dict(row) for row in SAMPLE_ROWS]


def _close_quoted_fields(text: str) -> Tuple[str, int]:
    """
    Remove blanks between a closing quote and the delimiter or line end that
    follows it, and count the non-blank records outside quoted fields
    """
    out: List[str] = []
    pending: List[str] = []
    in_quotes = after_quote = has_content = False
    field_start = True
    records = 0
    for ch in text:
        if in_quotes:
            out.append(ch)
            if ch == '"':
                in_quotes, after_quote = False, True
            continue
        if after_quote and ch in " \t":
            pending.append(ch)
            continue
        if ch not in ",\r\n":
            out.extend(pending)
        pending = []
        after_quote = False

        if ch in ",\n":
            field_start = True
            if ch == "\n":
                records += has_content
                has_content = False
        elif ch == '"' and field_start:
            # Opening quote, or the second half of an escaped "" pair
            in_quotes = has_content = True
        elif not ch.isspace():
            field_start = False
            has_content = True
        out.append(ch)
    return "".join(out), records + has_content



def _keep_long_row(fields: List[str]) -> List[str]:
    logger.warning(f"CSV row has more cells than the header, extra cells ignored: {fields}")
    return fields


def parse_csv_text(text: str) -> List[Dict[str, str]]:
    """
    Parse comma-separated text into one mapping per data row

    Quoted fields may contain commas and newlines, and a doubled quote is an
    escaped quote. Header names and cells are trimmed after quote stripping.
    Rows shorter than the header simply lack the missing keys; extra cells
    are dropped.

    Args:
        text: Raw CSV content, header row first

    Returns:
        List of row mappings in input order (empty for empty input)
    """
    if not text or not text.strip():
        return []

    normalized, record_count = _close_quoted_fields(text)
    try:
        frame = pd.read_csv(
            StringIO(normalized),
            dtype=str,
            keep_default_na=False,
            skipinitialspace=True,
            index_col=False,
            engine="python",
            on_bad_lines=_keep_long_row,
        )
    except pd.errors.EmptyDataError:
        return []

    expected_rows = max(record_count - 1, 0)
    if len(frame) < expected_rows:
        logger.warning(f"Discarded {expected_rows - len(frame)} of {expected_rows} CSV rows as unparseable")

    headers = [str(column).strip() for column in frame.columns]
    rows = []
    for values in frame.itertuples(index=False, name=None):
        row = {}
        for header, value in zip(headers, values):
            if pd.isna(value):
                continue
            row[header] = str(value).strip()
        rows.append(row)
    return rows


def pick_first(row: Mapping[str, str], aliases: Sequence[str], default: str = "") -> str:
    """
    Return the value of the first alias present in row

    Args:
        row: Parsed CSV row
        aliases: Column names in priority order
        default: Value when no alias matches

    Returns:
        Matching cell value or default
    """
    for alias in aliases:
        if alias in row:
            return row[alias]
    return default


def truncate(text: Optional[str], max_length: int = 50) -> str:
    """Shorten text for log lines"""
    if not text:
        return ""
    if len(text) > max_length:
        return text[:max_length] + "..."
    return text
