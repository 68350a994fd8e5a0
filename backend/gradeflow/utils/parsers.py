"""File parsing utilities that convert supported file formats into a
normalized question list for a definition of a given modality.

Supported input types: JSON, CSV, TXT and DOCX. Parsers return a list of
raw dictionaries in the canonical question shape (`prompt`, `options`,
`correct_option_index`, `explanation` for MCQ; `prompt`,
`expected_points` for QA). Validation happens afterwards in
`questions.parse_question` so that per-item errors can be reported.
"""

import io
import json
import csv
import zipfile
from typing import List, Dict, Tuple

import docx
from docx.opc.exceptions import PackageNotFoundError

from ..questions import Modality


def parse_file_to_questions(file_bytes: bytes, filename: str, modality: Modality) -> List[Dict]:
    """Dispatch to the appropriate parser based on file extension."""
    name = filename.lower()
    modality = Modality(modality)
    if name.endswith('.json'):
        return parse_json(file_bytes, modality)
    if name.endswith('.csv'):
        return parse_csv(file_bytes, modality)
    if name.endswith('.txt'):
        return parse_txt(file_bytes, modality)
    if name.endswith('.docx'):
        return parse_docx(file_bytes, modality)
    raise ValueError('Unsupported file type')


def parse_json(b: bytes, modality: Modality):
    """Parse a JSON array of question objects (or `{"questions": [...]}`)."""
    data = json.loads(b.decode('utf-8'))
    if isinstance(data, dict):
        data = data.get('questions') or []
    if not isinstance(data, list):
        raise ValueError('JSON import must be a list of questions')
    return [normalize_question(item, modality) if isinstance(item, dict) else item for item in data]


def parse_csv(b: bytes, modality: Modality):
    """Parse a CSV with one question per row.

    MCQ columns: `question`, `options` (pipe separated) and `correct`
    holding either the correct option's text or its zero-based index,
    plus an optional `explanation`. QA columns: `question` and
    `expected_points`.
    """
    out = []
    sio = io.StringIO(b.decode('utf-8'))
    reader = csv.DictReader(sio)
    for row in reader:
        prompt = str(row.get('question') or row.get('prompt') or '').strip()
        if modality is Modality.QA:
            out.append({'prompt': prompt, 'expected_points': (row.get('expected_points') or '').strip()})
            continue
        # pipe-delimited options so teachers can author simple CSVs quickly
        options_raw = row.get('options') or row.get('answers') or ''
        options = [p.strip() for p in options_raw.split('|') if p.strip()]
        out.append({
            'prompt': prompt,
            'options': options,
            'correct_option_index': _resolve_correct(options, row.get('correct')),
            'explanation': (row.get('explanation') or '').strip(),
        })
    return out


def parse_txt(b: bytes, modality: Modality):
    """Parse a plaintext format where questions are separated by blank lines."""
    s = b.decode('utf-8')
    sections = [sec.strip() for sec in s.split('\n\n') if sec.strip()]
    return [_parse_block(sec, modality) for sec in sections]


def parse_docx(b: bytes, modality: Modality):
    """Parse a DOCX document into question blocks.

    Paragraph groups separated by empty paragraphs are treated as a
    question block. If a block contains `|` it is parsed as
    `question|option1|option2...` otherwise the first line is the
    question and subsequent lines are options (MCQ) or rubric (QA).
    """
    try:
        doc = docx.Document(io.BytesIO(b))
    except (PackageNotFoundError, zipfile.BadZipFile, KeyError) as e:
        raise ValueError('invalid DOCX file') from e
    # Collect contiguous paragraphs into blocks separated by empty paragraphs
    blocks = []
    current = []
    for p in doc.paragraphs:
        text = (p.text or '').strip()
        if not text:
            if current:
                blocks.append('\n'.join(current))
                current = []
            continue
        current.append(text)
    if current:
        blocks.append('\n'.join(current))
    return [_parse_block(blk, modality) for blk in blocks]


def _parse_block(blk: str, modality: Modality) -> Dict:
    if '|' in blk:
        lines = [x.strip() for x in blk.split('|') if x.strip()]
    else:
        lines = [l.strip() for l in blk.splitlines() if l.strip()]
    if not lines:
        # nothing but separators; left for parse_question to reject
        lines = ['']
    prompt, rest = lines[0], lines[1:]
    if modality is Modality.QA:
        return {'prompt': prompt, 'expected_points': '\n'.join(rest)}
    explanation = ''
    options = []
    correct = None
    for l in rest:
        if l.lower().startswith('explanation:'):
            explanation = l.split(':', 1)[1].strip()
            continue
        text, is_correct = _parse_answer_line(l)
        if is_correct and correct is None:
            correct = len(options)
        options.append(text)
    # If no option is explicitly marked correct, mark the first.
    return {
        'prompt': prompt,
        'options': options,
        'correct_option_index': 0 if correct is None else correct,
        'explanation': explanation,
    }


def normalize_question(item: dict, modality: Modality) -> dict:
    """Normalize a parsed question object (maps alternative keys to the
    canonical output shape).
    """
    prompt = item.get('prompt') or item.get('question') or item.get('question_text') or ''
    if modality is Modality.QA:
        return {'prompt': prompt, 'expected_points': item.get('expected_points') or item.get('rubric') or ''}
    options = item.get('options')
    correct = item.get('correct_option_index', item.get('correct_answer'))
    if options is None and item.get('possible_answers'):
        # `[{answer_text, is_correct}]` lists from older exports
        answers = item['possible_answers']
        options = [a.get('answer_text') for a in answers if isinstance(a, dict)]
        correct = next((i for i, a in enumerate(answers) if isinstance(a, dict) and a.get('is_correct')), correct)
    return {
        'prompt': prompt,
        'options': options or [],
        'correct_option_index': _resolve_correct(options or [], correct),
        'explanation': item.get('explanation') or item.get('solution') or '',
    }


def _resolve_correct(options: List[str], correct):
    """Map a correct-answer marker (index or option text) to an option index."""
    if correct is None or (isinstance(correct, str) and not correct.strip()):
        return None
    if isinstance(correct, int) and not isinstance(correct, bool):
        return correct
    text = str(correct).strip()
    for i, option in enumerate(options):
        if option.strip().lower() == text.lower():
            return i
    try:
        return int(text)
    except ValueError:
        return None


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
