"""LLM-backed resume tailoring: (jd_text, resume_text, mode) -> LaTeX."""

from __future__ import annotations

import logging
import re
from typing import Dict, List, Optional

from openai import OpenAI

from config import require_openai_api_key, settings
from services.errors import PipelineFailure

logger = logging.getLogger(__name__)

# Max characters of (job description, resume) passed to the model per mode.
INPUT_LIMITS: Dict[str, Dict[str, int]] = {
    "QUICK": {"jd_text": 6000, "resume_text": 8000},
    "DEEP": {"jd_text": 10000, "resume_text": 15000},
    "FROM_SCRATCH": {"jd_text": 8000, "resume_text": 12000},
}

MAX_OUTPUT_TOKENS: Dict[str, int] = {
    "QUICK": 6000,
    "DEEP": 10000,
    "FROM_SCRATCH": 8000,
}

BASE_SYSTEM_PROMPT = """You are an ATS resume generator that writes LaTeX.
Rules:
- Output ONLY a complete LaTeX document starting with \\documentclass. No Markdown.
- Never invent employers, titles, dates, degrees or metrics that are not in the source resume.
- Keep the layout ATS-safe: single column, no tables, no icons, no images.
- Prefer one page."""

MODE_INSTRUCTIONS: Dict[str, str] = {
    "QUICK": """MODE: QUICK OPTIMIZE
Keep the candidate's structure. Rewrite the summary and bullets to mirror the job
description's language and surface matching skills near the top.""",
    "DEEP": """MODE: DEEP TAILOR
Target title: {target_title}
Must-include keywords (only where the resume supports them): {keywords}
Reorder sections and bullets by relevance to the role, quantify impact where the
source provides numbers, and align the skills section with the job description.""",
    "FROM_SCRATCH": """MODE: FROM SCRATCH
Extract skills, experience, education, projects and certifications from the
resume, then rebuild the document with a fresh structure aligned to the job
description. Omit anything the source does not contain.""",
}

KEYWORD_CANDIDATES: List[str] = [
    "python", "java", "javascript", "typescript", "go", "rust", "c++", "c#", "ruby", "php",
    "react", "angular", "vue", "node.js", "django", "flask", "fastapi", "spring", ".net",
    "sql", "postgresql", "mysql", "mongodb", "redis", "elasticsearch",
    "aws", "azure", "gcp", "docker", "kubernetes", "terraform", "ci/cd",
    "microservices", "rest api", "graphql", "agile", "scrum",
    "machine learning", "data science", "leadership", "communication", "collaboration",
]

TITLE_PATTERNS = [
    re.compile(r"(?:job\s*title|position|role)\s*[:\-]\s*(.+)", re.IGNORECASE),
    re.compile(r"we\s*(?:are|'re)\s*(?:looking|hiring)\s*(?:for|a)\s*(.+?)(?:\.|,|to\s+join)", re.IGNORECASE),
]


def truncate_text(text: str, max_chars: int) -> str:
    if len(text) <= max_chars:
        return text
    return text[:max_chars] + "\n\n[... content truncated for length ...]"


def derive_target_title(jd_text: str) -> str:
    for pattern in TITLE_PATTERNS:
        match = pattern.search(jd_text)
        if match and match.group(1).strip():
            return match.group(1).strip()[:80]
    for line in jd_text.splitlines():
        line = line.strip()
        if 5 < len(line) < 100:
            return line
    return ""


def derive_keywords(jd_text: str, limit: int = 15) -> List[str]:
    lowered = jd_text.lower()
    found = [kw for kw in KEYWORD_CANDIDATES if kw in lowered][:limit]
    found.extend(re.findall(r"\d+\+?\s*years?", jd_text, flags=re.IGNORECASE)[:2])
    return found


def build_user_prompt(mode: str, jd_text: str, resume_text: str) -> str:
    limits = INPUT_LIMITS[mode]
    jd = truncate_text(jd_text, limits["jd_text"])
    resume = truncate_text(resume_text, limits["resume_text"])
    instructions = MODE_INSTRUCTIONS[mode]
    if mode == "DEEP":
        instructions = instructions.format(
            target_title=derive_target_title(jd_text) or "(infer from the job description)",
            keywords=", ".join(derive_keywords(jd_text)) or "(extract from the job description)",
        )
    return f"{instructions}\n\nJOB DESCRIPTION:\n{jd}\n\nRESUME:\n{resume}\n\nReturn ONLY LaTeX."


def clean_latex_output(raw: Optional[str]) -> str:
    latex = str(raw or "").strip()
    latex = re.sub(r"^```[a-zA-Z]*\n?", "", latex)
    latex = re.sub(r"\n?```$", "", latex)
    latex = latex.strip()
    if "\\documentclass" not in latex:
        raise PipelineFailure("The generated document was incomplete. Please try again.")
    return latex


def get_openai_client() -> OpenAI:
    try:
        api_key = require_openai_api_key()
    except ValueError as exc:
        raise PipelineFailure("Resume generation is not configured.") from exc
    return OpenAI(api_key=api_key, timeout=float(settings.OPENAI_TIMEOUT_SECONDS))


def generate_tailored_latex(jd_text: str, resume_text: str, mode: str) -> str:
    """Tailor a resume to a job description. Raises PipelineFailure on any error."""
    mode = str(mode or "QUICK").upper()
    if mode not in INPUT_LIMITS:
        raise PipelineFailure(f"Unsupported generation mode: {mode}")
    if not (jd_text or "").strip() or not (resume_text or "").strip():
        raise PipelineFailure("Job description and resume text are both required.")

    client = get_openai_client()
    try:
        response = client.chat.completions.create(
            model=settings.OPENAI_MODEL,
            max_tokens=MAX_OUTPUT_TOKENS[mode],
            temperature=0.2,
            messages=[
                {"role": "system", "content": BASE_SYSTEM_PROMPT},
                {"role": "user", "content": build_user_prompt(mode, jd_text, resume_text)},
            ],
        )
    except Exception as exc:
        logger.warning("Tailoring model call failed: %s", exc)
        raise PipelineFailure("The resume generator is unavailable right now. Please try again.") from exc

    choices = getattr(response, "choices", None) or []
    content = choices[0].message.content if choices else None
    return clean_latex_output(content)
