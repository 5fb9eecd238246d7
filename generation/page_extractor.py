"""
Page Extractor: reads exam questions off one rendered page image.

The model sees the page (base64 PNG) plus a short memory of earlier pages so
questions that continue across a page break can be flagged. Only statements,
options and figure descriptions are extracted, never answers.
"""

import logging
from typing import Dict, List, Optional

from pydantic import ValidationError

from generation.errors import GenerationError, JsonExtractionError
from generation.json_parser import parse_json_robust
from generation.latex_cleaner import clean_question_latex
from generation.schemas import ExtractedItem

log = logging.getLogger("generation.pipeline")

EXTRACTION_TEMPERATURE = 0.1
EXTRACTION_MAX_TOKENS = 4000
PREVIOUS_CONTEXT_LIMIT = 500
PAGE_MEMORY_PREVIEW = 200
PAGE_MEMORY_STORE = 1000


EXTRACTION_PROMPT = """You are an expert at extracting questions from academic exam papers. Analyze this page image and extract ALL questions with perfect accuracy.

LATEX:
1. ALL mathematical expressions MUST be wrapped in $ for inline or $$ for display math
2. Use proper LaTeX commands ($\\alpha$, $\\frac{{a}}{{b}}$, $x^2$, $\\sqrt{{x}}$, $\\lim_{{x \\to \\infty}}$); NEVER \\backslash or \\ackslash prefixes

EXTRACTION RULES:
1. Extract EVERY question on the page, however small or partial
2. Classify each as MCQ (one correct option), MSQ (several correct options), NAT (numerical answer, no options) or Subjective (descriptive, no options)
3. Extract ONLY the statement and options. DO NOT extract answers, solutions or answer keys
4. Describe diagrams, graphs, circuits and figures clearly, e.g. "[IMAGE: circle with center O and radius r]"
5. Flag questions that continue from or onto another page
{context_block}
Return a JSON array in exactly this format:
[{{"question_statement":"Full question text in LaTeX. [IMAGE: description if present]","question_type":"MCQ","options":["A text","B text","C text","D text"],"question_number":"1","has_image":false,"image_description":"","is_continuation":false,"spans_multiple_pages":false}}]

Use null options for NAT and Subjective. If no questions are found return []."""


def build_extraction_prompt(previous_context: str = "", page_memory: Optional[Dict[int, str]] = None) -> str:
    parts = []
    if previous_context:
        parts.append(f"Previous page context: {previous_context[-PREVIOUS_CONTEXT_LIMIT:]}")
    if page_memory:
        memory = "\n".join(
            f"Page {page}: {content[:PAGE_MEMORY_PREVIEW]}" for page, content in page_memory.items()
        )
        parts.append(f"Page memory:\n{memory}")
    context_block = ("\n" + "\n\n".join(parts) + "\n") if parts else ""
    return EXTRACTION_PROMPT.format(context_block=context_block)


async def extract_questions_from_page(
    client,
    image_base64: str,
    page_number: int,
    previous_context: str = "",
    page_memory: Optional[Dict[int, str]] = None,
) -> List[ExtractedItem]:
    """
    Extract the questions on one page.

    An unparsable response yields []; a failed completion raises
    GenerationError naming the page. page_memory (if given) is updated with
    the start of this page's response.
    """
    prompt = build_extraction_prompt(previous_context, page_memory)
    try:
        response = await client.complete(
            prompt,
            image_base64=image_base64,
            temperature=EXTRACTION_TEMPERATURE,
            max_tokens=EXTRACTION_MAX_TOKENS,
        )
    except GenerationError as e:
        log.error(f"[EXTRACT] Error extracting questions from page {page_number}: {e}")
        raise GenerationError(f"Failed to extract questions from page {page_number}: {e}") from e

    if page_memory is not None:
        page_memory[page_number] = response[:PAGE_MEMORY_STORE]

    try:
        raw_items = parse_json_robust(response, "array")
    except JsonExtractionError:
        log.warning(f"[EXTRACT] Failed to extract questions from page {page_number}")
        return []

    questions: List[ExtractedItem] = []
    for raw in raw_items:
        if not isinstance(raw, dict):
            continue
        try:
            item = ExtractedItem.model_validate({**raw, "page_number": page_number})
        except ValidationError as e:
            log.warning(f"[EXTRACT] Dropping malformed item on page {page_number}: {e.errors()[0]['msg']}")
            continue
        questions.append(clean_question_latex(item))

    log.info(f"[EXTRACT] Extracted {len(questions)} question(s) from page {page_number}")
    return questions
