"""File parsing utilities that convert question-bank files into a
normalized question list.

Supported input types: JSON, CSV and TXT. Parsers return a list of
dictionaries with keys: `question_text`, `possible_answers`,
`explanation`, `category`, `weight`, `must_include` and `must_exclude`.

Besides the nested `possible_answers` shape, JSON and CSV accept the flat
question-bank layout `option1`..`option4` plus a 1-based `answer` column.
"""

import io
import json
import csv
from typing import Dict, List, Optional, Tuple

FLAT_OPTION_KEYS = ('option1', 'option2', 'option3', 'option4')


def parse_file_to_questions(file_bytes: bytes, filename: str) -> List[Dict]:
    """Dispatch to the appropriate parser based on file extension."""
    name = filename.lower()
    if name.endswith('.json'):
        return parse_json(file_bytes)
    if name.endswith('.csv'):
        return parse_csv(file_bytes)
    if name.endswith('.txt'):
        return parse_txt(file_bytes)
    raise ValueError('Unsupported file type')


def parse_json(b: bytes):
    """Parse a JSON array of question objects and normalize them."""
    data = json.loads(b.decode('utf-8'))
    if isinstance(data, dict):
        data = data.get('questions') or []
    return [normalize_question(item) for item in data]


def parse_csv(b: bytes):
    """Parse a CSV question bank.

    Either a pipe-separated `answers` column with an optional `correct`
    column naming the correct answer text, or `option1`..`option4` with a
    1-based `answer` column. Selection metadata columns (`category`,
    `weight`, `must_include`/`mustInclude`, `must_exclude`/`mustExclude`)
    are passed through if present.
    """
    out = []
    sio = io.StringIO(b.decode('utf-8-sig'))
    reader = csv.DictReader(sio)
    for row in reader:
        if any(row.get(k) for k in FLAT_OPTION_KEYS):
            out.append(normalize_question(row))
            continue
        item = _metadata(row)
        item['question_text'] = str(row.get('question') or row.get('question_text') or '')
        # Accept pipe-delimited answers so simple banks can be authored quickly.
        answers_raw = row.get('answers') or row.get('possible_answers') or ''
        parts = [p for p in answers_raw.split('|') if p.strip()]
        correct = row.get('correct')
        for p in parts:
            is_correct = False
            if correct is not None:
                is_correct = p.strip() == str(correct).strip()
            item['possible_answers'].append({'answer_text': p.strip(), 'is_correct': is_correct})
        out.append(item)
    return out


def parse_txt(b: bytes):
    """Parse a simple plaintext format where questions are separated by
    blank lines and the first answer line is treated as correct unless a
    marker says otherwise.
    """
    s = b.decode('utf-8')
    sections = [sec.strip() for sec in s.split('\n\n') if sec.strip()]
    out = []
    for sec in sections:
        lines = sec.splitlines()
        answers = [_parse_answer_line(l.strip()) for l in lines[1:] if l.strip()]
        has_marker = any(is_correct for _, is_correct in answers)
        item = _metadata({})
        item['question_text'] = lines[0].strip()
        item['possible_answers'] = [
            {'answer_text': text, 'is_correct': is_correct or (not has_marker and i == 0)}
            for i, (text, is_correct) in enumerate(answers)
        ]
        out.append(item)
    return out


def normalize_question(item: dict) -> dict:
    """Normalize a parsed question object (maps alternative keys to the
    canonical output shape).
    """
    out = _metadata(item)
    out['question_text'] = item.get('question_text') or item.get('question') or ''
    answers = item.get('possible_answers') or item.get('answers')
    if isinstance(answers, list) and answers:
        out['possible_answers'] = [
            dict(a) if isinstance(a, dict) else {'answer_text': str(a), 'is_correct': False}
            for a in answers
        ]
        correct = _coerce_int(item.get('answer'))
        if correct is not None and not any(isinstance(a, dict) and a.get('is_correct') for a in out['possible_answers']):
            for i, a in enumerate(out['possible_answers'], start=1):
                a['is_correct'] = i == correct
        return out
    options = item.get('options') if isinstance(item.get('options'), list) else [item.get(k) for k in FLAT_OPTION_KEYS]
    correct = _coerce_int(item.get('answer') or item.get('correct_option'))
    out['possible_answers'] = [
        {'answer_text': str(text).strip(), 'is_correct': i == correct}
        for i, text in enumerate(options, start=1)
        if text is not None and str(text).strip()
    ]
    return out


def _metadata(item: dict) -> dict:
    return {
        'question_text': '',
        'possible_answers': [],
        'explanation': item.get('explanation') or item.get('solution') or None,
        'category': (item.get('category') or None),
        'weight': _coerce_int(item.get('weight')),
        'must_include': _coerce_bool(item.get('must_include', item.get('mustInclude'))),
        'must_exclude': _coerce_bool(item.get('must_exclude', item.get('mustExclude'))),
    }


def _parse_answer_line(text: str) -> Tuple[str, bool]:
    """Detect simple correctness markers in an answer line.

    Supports leading '*' or trailing markers like '(correct)'; falls back to False.
    """
    is_correct = False
    cleaned = text.strip()
    lower = cleaned.lower()
    # trailing markers
    for marker in ('(correct)', '[correct]', '{correct}'):
        if lower.endswith(marker):
            is_correct = True
            cleaned = cleaned[: -len(marker)].strip()
            break
    # leading marker like "* answer"
    if cleaned.startswith('*'):
        is_correct = True
        cleaned = cleaned.lstrip('*').strip()
    return cleaned, is_correct


def _coerce_int(val) -> Optional[int]:
    try:
        return int(val) if val is not None and str(val).strip() != '' else None
    except (TypeError, ValueError):
        return None


def _coerce_bool(val) -> bool:
    if isinstance(val, bool):
        return val
    if val is None:
        return False
    return str(val).strip().lower() in ('1', 'true', 'yes', 'y', 'x')
