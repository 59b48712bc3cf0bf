import enum
import logging

from sqlalchemy import select
from sqlalchemy.orm import Session

from . import tables
from .models import ControlRecord, CorpusRecord

logger = logging.getLogger(__name__)


class FrameworkFamily(str, enum.Enum):
    GENERAL = "general"
    ISO27001 = "iso27001"
    NIST80053 = "nist80053"


# Template id per framework family; ids double as override keys in prompt_templates.
FAMILY_TEMPLATES = {
    FrameworkFamily.GENERAL: "general_analysis",
    FrameworkFamily.ISO27001: "iso27001_analysis",
    FrameworkFamily.NIST80053: "nist80053_analysis",
}


# Catalog names recognised when a framework row carries no family. Exact keys
# after normalisation; names are never substring-matched.
FRAMEWORK_NAME_FAMILIES = {
    "iso 27001": FrameworkFamily.ISO27001,
    "iso/iec 27001": FrameworkFamily.ISO27001,
    "iso/iec 27001:2013": FrameworkFamily.ISO27001,
    "iso/iec 27001:2022": FrameworkFamily.ISO27001,
    "iso 27001:2022": FrameworkFamily.ISO27001,
    "nist 800-53": FrameworkFamily.NIST80053,
    "nist sp 800-53": FrameworkFamily.NIST80053,
    "nist sp 800-53 rev. 5": FrameworkFamily.NIST80053,
    "nist sp 800-53 rev 5": FrameworkFamily.NIST80053,
}


def _normalise_name(name: str) -> str:
    return " ".join(name.lower().split())


def framework_family(value: str | None, name: str | None = None) -> FrameworkFamily:
    """Stored family value first, then the catalog name table, else general."""
    try:
        return FrameworkFamily((value or "").strip().lower())
    except ValueError:
        pass
    if name:
        return FRAMEWORK_NAME_FAMILIES.get(_normalise_name(name), FrameworkFamily.GENERAL)
    return FrameworkFamily.GENERAL


# Shared head of every template: control block and corpus summary
_CONTROL_BLOCK = """COMPLIANCE CONTROL:
Identifier: {control_id}
Title: {control_title}
Category: {category}
Requirement: {requirement}

ORGANIZED COMPLIANCE DOCUMENT:
This document consolidates {chunk_count} passages from {document_count} source documents
across these categories: {categories}. Line numbers are provided for precise attribution.

{corpus}
"""

GENERAL_TEMPLATE = (
    "You are a strict compliance analyst. Find evidence in the organized document for the control below.\n"
    "Do NOT assume compliance: if the control is not explicitly addressed, it is missing.\n\n"
    + _CONTROL_BLOCK
    + "\nYour task:\n"
    "  1. Identify the passages that provide evidence for this control\n"
    '  2. Decide the status: "compliant", "partial" or "missing"\n'
    "  3. Assign a confidence score (0-100) for your assessment\n"
    "  4. Quote each piece of evidence verbatim and give its line numbers\n"
)

ISO27001_TEMPLATE = (
    "You are an ISO/IEC 27001:2022 lead auditor assessing an Annex A control.\n"
    "Judge whether the organization's documented information demonstrates the control is designed\n"
    "and implemented. Policies alone without operating procedures or records count as partial.\n\n"
    + _CONTROL_BLOCK
    + "\nAssessment steps:\n"
    "  1. Check the control's purpose and the requirement text against the document\n"
    "  2. Look for policy, procedure and record evidence (who, what, how often)\n"
    '  3. Decide the status: "compliant", "partial" or "missing"\n'
    "  4. Quote each piece of evidence verbatim and give its line numbers\n"
)

NIST80053_TEMPLATE = (
    "You are a NIST SP 800-53 Rev. 5 assessor examining a security and privacy control.\n"
    "Check each part of the control statement (a, b, c ...) and any organization-defined parameters\n"
    "such as frequencies, roles and time periods.\n\n"
    + _CONTROL_BLOCK
    + "\nAssessment steps:\n"
    "  1. Split the requirement into its parts and find evidence for each\n"
    "  2. Note missing organization-defined parameters as gaps\n"
    '  3. Decide the status: "compliant" (all parts), "partial" (some parts) or "missing" (none)\n'
    "  4. Quote each piece of evidence verbatim and give its line numbers\n"
)

EMBEDDED_TEMPLATES = {
    "general_analysis": GENERAL_TEMPLATE,
    "iso27001_analysis": ISO27001_TEMPLATE,
    "nist80053_analysis": NIST80053_TEMPLATE,
}

DEFAULT_TEMPLATE = GENERAL_TEMPLATE

# Appended to every rendered prompt, overrides included; not a format string.
RESPONSE_FORMAT = """
Respond with ONLY valid JSON in this format:
{
  "status": "compliant|partial|missing",
  "confidenceScore": 85,
  "reasoning": "Concise explanation of what the documents cover and any gaps...",
  "evidenceItems": [
    {
      "evidenceText": "Exact text quoted from the organized document...",
      "documentName": "Source document name from the *Source:* line",
      "pageNumber": 5,
      "lineStart": 125,
      "lineEnd": 130,
      "confidence": 90,
      "relevanceScore": 95
    }
  ]
}

Rules:
- "compliant": strong, explicit evidence that fully satisfies the control
- "partial": some evidence exists but gaps remain
- "missing": no relevant evidence found; evidenceItems is []
- Quote evidence text exactly as written, without the line-number prefix
- Use ONLY the provided document."""


def number_lines(text: str) -> str:
    return "\n".join(f"{i:>4}: {line}" for i, line in enumerate(text.split("\n"), start=1))


def _substitute(template: str, values: dict[str, str]) -> str:
    # Plain replacement so operator templates may contain literal braces.
    for key, value in values.items():
        template = template.replace("{" + key + "}", value)
    return template


def render_prompt(template: str, control: ControlRecord, corpus: CorpusRecord) -> str:
    values = {
        "control_id": control.control_id,
        "control_title": control.title,
        "requirement": control.requirement_text or control.title,
        "category": control.category or "Not specified",
        "categories": ", ".join(corpus.categories) or "No categories",
        "document_count": str(corpus.document_count),
        "chunk_count": str(corpus.chunk_count),
        "corpus": number_lines(corpus.text),
    }
    return _substitute(template, values).rstrip() + "\n" + RESPONSE_FORMAT


def override_template(session: Session, template_id: str) -> str | None:
    return session.execute(
        select(tables.PromptTemplate.body)
        .where(tables.PromptTemplate.template_id == template_id)
        .where(tables.PromptTemplate.is_active.is_(True))
        .order_by(tables.PromptTemplate.id.desc())
        .limit(1)
    ).scalar_one_or_none()


async def resolve_template(store, family: FrameworkFamily | str | None) -> str:
    """
    Operator override for the family's template id if one is active, otherwise
    the embedded template. Lookup failures fall back to the embedded template.
    """
    template_id = FAMILY_TEMPLATES[framework_family(family)]
    try:
        body = await store.transaction(
            lambda s: override_template(s, template_id), f"load prompt template {template_id}"
        )
    except Exception as e:
        logger.warning("Prompt template override lookup failed for %s: %s", template_id, e)
        body = None
    return body or EMBEDDED_TEMPLATES.get(template_id, DEFAULT_TEMPLATE)
