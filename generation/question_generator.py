"""
Question Generator: one LLM call that produces new exam questions for a topic.

The prompt carries three context blocks:
  - reference questions (previous-year questions) as style/difficulty guide only
  - questions already generated for this topic/type configuration (never repeat)
  - statements accepted moments ago in this run

Output: the raw list of question dicts. Structural checks are the caller's job.
"""

import logging
from typing import Iterable, List, Optional, Sequence

from generation.errors import GenerationError
from generation.json_parser import parse_json_robust
from generation.schemas import QuestionType, TopicQuota

log = logging.getLogger("generation.pipeline")

EXISTING_CONTEXT_LIMIT = 4000
RECENT_LIMIT = 3
REFERENCE_SOLUTION_PREVIEW = 300
NOTES_LIMIT = 2000

GENERATION_TEMPERATURE = 0.3
GENERATION_MAX_TOKENS = 4096


# ─── Generation Prompt ─────────────────────────────────────────────────────────

GENERATION_PROMPT = """You are an expert professor creating {exam_name} {course_name} {question_type} entrance exam questions. This is competitive exam preparation, so maintain the HIGHEST quality standards.

LATEX REQUIREMENTS:
1. ALL mathematical expressions MUST be wrapped in $ for inline or $$ for display
2. Use ONLY proper LaTeX commands, e.g. $\\alpha$, $\\frac{{a}}{{b}}$, $x^2$, $\\sqrt{{x}}$, $\\int_a^b f(x)\\,dx$, $\\sum_{{i=1}}^{{n}} x_i$
3. NEVER use malformed commands like \\backslashhat or \\ackslash

EXAM CONTEXT:
- Exam: {exam_name}
- Course: {course_name}
- Topic: {topic_name}
- Weightage: {weightage:.1f}%
- Question Type: {question_type}

SELF-VALIDATION:
After generating each question, review it critically:
- MCQ: is there EXACTLY ONE correct answer?
- MSQ: are there 2-3 correct answers, all identified?
- NAT: is the numerical answer correct and calculable?
- Subjective: is the question clear and the answer comprehensive?
If you detect ANY issue set "is_wrong": true and give the reason in "validation_reason".
Otherwise set "is_wrong": false.
{notes_block}{reference_block}{existing_block}{recent_block}

YOUR TASK:
1. Study the previous year questions for pattern, difficulty and style. NEVER copy or lightly modify them.
2. Review every already generated question. Do not reuse their concepts, scenarios or numbers.
3. Generate {count} COMPLETELY NEW question(s) on "{topic_name}" at {exam_name} difficulty.

{type_requirements}

SOLUTION RULES:
- Concise (max 500 characters), single continuous line, steps separated by periods
- Use only authentic, proven methods (from the topic notes when given)

JSON REQUIREMENTS:
1. Return ONLY the JSON array, nothing before or after, no markdown code fences
2. No line breaks or control characters inside string values
3. Straight quotes only, no \\uXXXX, \\xXX or octal escapes

FORMAT:
[{{"question_statement":"...","question_type":"{question_type}","options":{options_example},"answer":"{answer_example}","solution":"Step 1. ... Step 2. ...","is_wrong":false}}]

Generate exactly {count} question(s). Output only pure JSON."""


TYPE_REQUIREMENTS = {
    QuestionType.MCQ: (
        "MCQ Requirements:\n"
        "- Exactly 4 options (A, B, C, D)\n"
        "- EXACTLY ONE option is correct, the other 3 are plausible distractors\n"
        "- Answer is a single letter"
    ),
    QuestionType.MSQ: (
        "MSQ Requirements:\n"
        "- Exactly 4 options (A, B, C, D)\n"
        "- 2-3 options are correct (never 1, never all 4)\n"
        "- Answer lists the correct letters, e.g. \"A, C\""
    ),
    QuestionType.NAT: (
        "NAT Requirements:\n"
        "- The answer is one specific number (integer or decimal)\n"
        "- No options (options must be null)\n"
        "- Include units in the statement where applicable"
    ),
    QuestionType.SUBJECTIVE: (
        "Subjective Requirements:\n"
        "- A descriptive question testing deep understanding\n"
        "- No options (options must be null)\n"
        "- Provide a detailed answer"
    ),
}

_ANSWER_EXAMPLES = {
    QuestionType.MCQ: "A",
    QuestionType.MSQ: "A, C",
    QuestionType.NAT: "42.5",
    QuestionType.SUBJECTIVE: "Detailed answer",
}


# ─── Context formatters ────────────────────────────────────────────────────────

def format_existing_item(
    index: int, statement: str, options: Optional[Sequence[str]], answer: Optional[str]
) -> str:
    """One numbered entry of the anti-repetition context."""
    text = f"{index}. {statement}"
    if options:
        text += f"\nOptions: {', '.join(str(o) for o in options)}"
    if answer:
        text += f"\nAnswer: {answer}"
    return text


class AntiRepetitionContext:
    """
    Questions already generated for one (topic, type, slot, part), newest first.

    add() puts a just-accepted question at the head, so the next prompt always
    sees it even when older entries are cut by the size limit.
    """

    def __init__(self, existing: Iterable = ()):
        self._entries: List[tuple] = [
            (q.question_statement, q.options, q.answer) for q in existing
        ]
        self._recent: List[str] = []

    def __len__(self) -> int:
        return len(self._entries)

    def add(self, statement: str, options: Optional[Sequence[str]], answer: Optional[str]) -> None:
        self._entries.insert(0, (statement, list(options) if options else None, answer))
        self._recent.append(statement)
        self._recent = self._recent[-RECENT_LIMIT:]

    @property
    def recent(self) -> List[str]:
        return list(self._recent)

    def render(self, limit: int = EXISTING_CONTEXT_LIMIT) -> str:
        blocks: List[str] = []
        used = 0
        for idx, (statement, options, answer) in enumerate(self._entries, start=1):
            block = format_existing_item(idx, statement, options, answer)
            # The newest entry is always kept whole
            if blocks and used + len(block) + 2 > limit:
                break
            blocks.append(block)
            used += len(block) + 2
        return "\n\n".join(blocks)


def format_reference_context(references: Sequence) -> str:
    """Previous-year questions as a numbered style guide."""
    parts = []
    for i, q in enumerate(references, start=1):
        lines = [
            f"PYQ {i} (Year: {getattr(q, 'year', None) or 'N/A'}, "
            f"Slot: {getattr(q, 'slot', None) or 'N/A'}, "
            f"Part: {getattr(q, 'part', None) or 'N/A'}, "
            f"Type: {q.question_type}):",
            f"Question: {q.question_statement}",
        ]
        if q.options:
            lines.append("Options:")
            for label, option in zip("ABCD", q.options):
                lines.append(f"  {label}. {option or ''}")
        if q.answer:
            lines.append(f"Correct Answer: {q.answer}")
        if q.solution:
            lines.append(f"Solution: {q.solution[:REFERENCE_SOLUTION_PREVIEW]}")
        parts.append("\n".join(lines))
    return "\n\n".join(parts)


def build_generation_prompt(
    *,
    topic: TopicQuota,
    exam_name: str,
    course_name: str,
    question_type: QuestionType,
    reference_context: str,
    existing_context: str,
    recent_statements: Sequence[str],
    count: int = 1,
    notes: str = "",
) -> str:
    question_type = QuestionType(question_type)

    notes_block = (
        f"\nTOPIC NOTES (use these methods/concepts for the solution):\n{notes[:NOTES_LIMIT]}\n"
        if notes else ""
    )
    reference_block = (
        "\nPREVIOUS YEAR QUESTIONS (INSPIRATION ONLY, DO NOT COPY)\n"
        "Same topic, type, slot and part as requested.\n"
        f"{reference_context}\n"
        if reference_context else ""
    )
    existing_block = (
        "\nALREADY GENERATED QUESTIONS (MUST NOT REPEAT)\n"
        "These exist for this exact topic/type/slot/part. Your question must differ "
        "in statement, options, concept and scenario.\n"
        f"{existing_context}\n"
        if existing_context else ""
    )
    recent_block = (
        "\nJUST GENERATED IN THIS SESSION (AVOID IMMEDIATELY)\n"
        + "\n".join(recent_statements[-RECENT_LIMIT:]) + "\n"
        if recent_statements else ""
    )

    has_options = question_type in (QuestionType.MCQ, QuestionType.MSQ)
    return GENERATION_PROMPT.format(
        exam_name=exam_name,
        course_name=course_name,
        question_type=question_type.value,
        topic_name=topic.topic_name,
        weightage=(topic.weight or 0.02) * 100,
        notes_block=notes_block,
        reference_block=reference_block,
        existing_block=existing_block,
        recent_block=recent_block,
        count=count,
        type_requirements=TYPE_REQUIREMENTS[question_type],
        options_example='["Option A","Option B","Option C","Option D"]' if has_options else "null",
        answer_example=_ANSWER_EXAMPLES[question_type],
    )


# ─── Main entry ────────────────────────────────────────────────────────────────

async def generate_questions_for_topic(client, **prompt_args) -> List[dict]:
    """
    Ask the model for new questions and return the parsed array.

    Raises:
        GenerationError:     empty response or empty array
        JsonExtractionError: the response could not be parsed
        plus anything the completion client raises
    """
    prompt = build_generation_prompt(**prompt_args)
    log.info(
        f"[GEN] Requesting {prompt_args.get('count', 1)} "
        f"{QuestionType(prompt_args['question_type']).value} question(s) for "
        f"'{prompt_args['topic'].topic_name}' (prompt {len(prompt)} chars)"
    )

    response = await client.complete(
        prompt, temperature=GENERATION_TEMPERATURE, max_tokens=GENERATION_MAX_TOKENS
    )
    if not response or not response.strip():
        raise GenerationError("Empty response from model")

    questions = parse_json_robust(response, "array")
    if not questions:
        raise GenerationError("Model returned an empty question array")
    return questions
