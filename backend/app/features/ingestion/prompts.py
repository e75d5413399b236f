"""
Ingestion feature: extraction prompts.
"""

from app.features.ingestion.pdf import PdfPage


def format_pages(pages: list[PdfPage]) -> str:
    return "\n\n".join(f"[Page {p.page}]\n{p.text}" for p in pages)


LECTURE_PROMPT = """You are an expert academic content analyzer. Analyze the following lecture content and extract structured knowledge points.

For each knowledge point, extract:
- title: A clear, concise title for the concept
- definition: A comprehensive explanation/definition
- keyConcepts: Related key terms and concepts (optional, omit if none)
- keyFormulas: Any relevant mathematical formulas (optional, omit if none)
- examples: Concrete examples mentioned (optional, omit if none)
- sourcePages: Array of page numbers where this concept appears

Keep knowledge points in the order they appear in the document.
Return ONLY a valid JSON array of knowledge points. No markdown, no explanation.

Lecture content:
{pages}"""


QUESTION_PROMPT = """You are an expert academic content analyzer. Analyze the following exam/assignment document and extract each individual question.

For each question, extract:
- questionNumber: The question number/label as shown (e.g. "1", "1a", "Q1")
- content: The full question text including any sub-parts
- options: Array of answer options if it's a multiple choice question (omit if not MC)
{answer_instruction}
- score: Points/marks allocated if shown (omit if not shown)
- sourcePage: The page number where the question appears

Return ONLY a valid JSON array of questions. No markdown, no explanation.

Document content:
{pages}"""

ANSWER_INSTRUCTION_WITH_ANSWERS = (
    "- referenceAnswer: The reference answer or solution provided (extract from the document)"
)
ANSWER_INSTRUCTION_NO_ANSWERS = (
    "- referenceAnswer: Omit this field (no answers provided in document)"
)


def build_lecture_prompt(pages: list[PdfPage]) -> str:
    return LECTURE_PROMPT.format(pages=format_pages(pages))


def build_question_prompt(pages: list[PdfPage], has_answers: bool) -> str:
    instruction = ANSWER_INSTRUCTION_WITH_ANSWERS if has_answers else ANSWER_INSTRUCTION_NO_ANSWERS
    return QUESTION_PROMPT.format(answer_instruction=instruction, pages=format_pages(pages))
