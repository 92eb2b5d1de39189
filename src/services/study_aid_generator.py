"""
Learning aids: generate and validate per-part study content from the LLM.
"""

from __future__ import annotations

import json
import logging
import re
import time
from typing import Any, Optional

import config
from services.errors import GenerationError, ValidationError
from services.llm_service import LLMProcessor
from services.models import JSON_MODES, EducationalMode, PersonalizationSettings
from utils.metrics import log_metric

LOGGER = logging.getLogger(__name__)

STUDY_AID_SYSTEM_PROMPT = (
    "You are the Tutor Engine of StudyGen, a learning assistant that helps students understand "
    "their study material interactively. The student selected one part of a course document and "
    "chose an action. Produce a precise, educational response for that action using only the text provided.\n\n"
    "INPUT (JSON): action, selectedText, context, language, studentLevel, tone, subject.\n\n"
    "OUTPUT RULES BY ACTION\n"
    "Simplify (plain text): rephrase selectedText in simpler language for the student's level, explain key "
    "terms, short sentences, end with a one-line recap starting with \"In short, \".\n"
    "Example (plain text): 1-2 concrete real-world examples tied to the subject, end with "
    "\"This example shows how the concept applies in real life.\"\n"
    "Summary (plain text): 3-6 concise bullet points, then one recap sentence starting with \"Overall, \".\n"
    "Explain (plain text): 2-3 paragraphs; define the concept, say why it matters, one short analogy, "
    "finish with a one-line encouragement.\n"
    "Diagram (JSON only): "
    '{"diagram": "graph TD\\nA[Main Concept] --> B[Sub Idea]", '
    '"nodes": [{"id": "A", "label": "Main Concept", "summary": "Short explanation"}]}. '
    "3-7 nodes, ASCII only, the diagram string starts with graph TD or graph LR. If no diagram is possible return "
    '{"diagram": "graph TD\\nA[Error] --> B[Cannot render diagram]", "nodes": []}.\n'
    "Quiz (JSON only): "
    '{"questions": [{"question": "text?", "options": ["A) ...", "B) ...", "C) ...", "D) ..."], '
    '"answer": "C", "explanation": "one sentence"}]}. '
    "3-4 questions, exactly 4 options each, answers inferable from context or selectedText.\n"
    "Flashcards (JSON only): "
    '{"flashcards": [{"term": "Key term", "definition": "Short definition"}]}. '
    "5-10 of the most important terms in selectedText.\n\n"
    "GENERAL: tailor depth and vocabulary to studentLevel, keep the requested tone, answer in the requested "
    "language, never echo the input, stay under 1000 words, and return JSON without markdown fences."
)

DIAGRAM_FALLBACK: dict[str, Any] = {
    "diagram": "graph TD\nA[Error] --> B[Cannot render diagram]",
    "nodes": [],
}

QUIZ_OPTION_COUNT = 4
MAX_FLASHCARDS = 10


def diagram_fallback() -> dict[str, Any]:
    return {"diagram": DIAGRAM_FALLBACK["diagram"], "nodes": []}


def _strip_json_raw(raw: str) -> str:
    """Remove markdown code fences and surrounding whitespace from LLM output."""
    text = (raw or "").strip()
    if text.startswith("```"):
        text = re.sub(r"^```(?:json)?\s*", "", text)
        text = re.sub(r"\s*```\s*$", "", text)
    return text.strip()


def _try_parse_json(raw: str) -> dict[str, Any]:
    """
    Parse JSON from LLM output. Tries raw parse, then stripped, then first { to last }.
    Returns {} when no object can be recovered.
    """
    for candidate in [raw, _strip_json_raw(raw)]:
        try:
            obj = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        return obj if isinstance(obj, dict) else {}
    match = re.search(r"\{[\s\S]*\}", raw or "")
    if match:
        try:
            obj = json.loads(match.group(0))
        except json.JSONDecodeError:
            return {}
        return obj if isinstance(obj, dict) else {}
    return {}


def _validate_diagram(obj: dict[str, Any]) -> dict[str, Any]:
    """Mermaid source plus node list, or the fallback diagram when either is unusable."""
    diagram = obj.get("diagram")
    nodes = obj.get("nodes")
    if not isinstance(diagram, str) or "-->" not in diagram or not isinstance(nodes, list) or not nodes:
        return diagram_fallback()
    out_nodes: list[dict[str, str]] = []
    for node in nodes:
        if not isinstance(node, dict) or not str(node.get("id") or "").strip():
            continue
        out_nodes.append(
            {
                "id": str(node["id"]).strip(),
                "label": str(node.get("label") or node["id"]).strip(),
                "summary": str(node.get("summary") or "").strip(),
            }
        )
    if not out_nodes:
        return diagram_fallback()
    return {"diagram": diagram.strip(), "nodes": out_nodes}


def _validate_quiz(obj: dict[str, Any]) -> dict[str, Any]:
    """Keep questions that carry text and at least 4 options; options are cut to exactly 4."""
    questions = obj.get("questions")
    if not isinstance(questions, list):
        raise GenerationError("Invalid quiz data received from the model.")
    out_questions: list[dict[str, Any]] = []
    for q in questions:
        if not isinstance(q, dict):
            continue
        text = str(q.get("question") or "").strip()
        options = q.get("options") if isinstance(q.get("options"), list) else []
        options = [str(o).strip() for o in options if str(o).strip()]
        if not text or len(options) < QUIZ_OPTION_COUNT:
            continue
        out_questions.append(
            {
                "question": text,
                "options": options[:QUIZ_OPTION_COUNT],
                "answer": str(q.get("answer", q.get("correct_answer", ""))).strip(),
                "explanation": str(q.get("explanation") or "").strip(),
            }
        )
    if not out_questions:
        raise GenerationError("The model returned no usable quiz questions.")
    return {"questions": out_questions}


def _validate_flashcards(obj: dict[str, Any]) -> dict[str, Any]:
    cards = obj.get("flashcards")
    if not isinstance(cards, list):
        raise GenerationError("Invalid flashcard data received from the model.")
    out: list[dict[str, str]] = []
    for card in cards[:MAX_FLASHCARDS]:
        if not isinstance(card, dict):
            continue
        term = str(card.get("term") or card.get("front") or "").strip()
        definition = str(card.get("definition") or card.get("back") or "").strip()
        if term:
            out.append({"term": term, "definition": definition or "-"})
    if not out:
        raise GenerationError("The model returned no usable flashcards.")
    return {"flashcards": out}


_VALIDATORS = {
    EducationalMode.DIAGRAM: _validate_diagram,
    EducationalMode.QUIZ: _validate_quiz,
    EducationalMode.FLASHCARDS: _validate_flashcards,
}


class StudyAidGenerator:
    """Generates one learning aid for a selected study part via LLM."""

    def __init__(self, llm: Optional[LLMProcessor] = None) -> None:
        self._llm = llm or LLMProcessor()

    def build_request(
        self,
        mode: EducationalMode,
        selected_text: str,
        context: str,
        personalization: Any,
        subject: Optional[str],
    ) -> dict[str, Any]:
        settings = (
            personalization
            if isinstance(personalization, PersonalizationSettings)
            else PersonalizationSettings.from_dict(personalization)
        )
        return {
            "action": mode.value,
            "selectedText": selected_text,
            "context": (context or "")[: config.MAX_CONTEXT_CHARS],
            "language": settings.language,
            "studentLevel": settings.level,
            "tone": settings.tone,
            "subject": subject or "General",
        }

    def generate(
        self,
        mode: Any,
        selected_text: str,
        context: str = "",
        personalization: Any = None,
        subject: Optional[str] = None,
        api_key: str = "",
        session_id: str = "",
    ) -> Any:
        """
        Generate the learning aid for *mode*.

        Returns:
            Stripped text for Simplify / Example / Summary / Explain; a dict for
            Diagram ({"diagram", "nodes"}), Quiz ({"questions"}) and Flashcards
            ({"flashcards"}). Diagram failures yield the fallback diagram.

        Raises:
            ValidationError: If the mode is unknown or no text was selected.
            GenerationError: If the call fails or returns unusable content.
        """
        try:
            aid_mode = EducationalMode.parse(mode)
        except ValueError as e:
            raise ValidationError(str(e)) from e
        if not (selected_text or "").strip():
            raise ValidationError("Select some text to study first.")

        request = self.build_request(aid_mode, selected_text.strip(), context, personalization, subject)
        start = time.perf_counter()
        try:
            raw = self._llm.invoke(
                STUDY_AID_SYSTEM_PROMPT,
                json.dumps(request, ensure_ascii=False, indent=2),
                api_key=api_key,
                temperature=0.4,
            )
            content = self._parse(aid_mode, raw)
        except GenerationError:
            if aid_mode is EducationalMode.DIAGRAM:
                LOGGER.warning("aid.diagram_fallback(session=%s)", session_id)
                return diagram_fallback()
            raise
        log_metric(
            f"aid.{aid_mode.value.lower()}",
            time.perf_counter() - start,
            session_id=session_id,
            chars=len(raw or ""),
        )
        return content

    def _parse(self, mode: EducationalMode, raw: str) -> Any:
        if mode not in JSON_MODES:
            text = (raw or "").strip()
            if not text:
                raise GenerationError(f"Received an empty {mode.value} response from the model.")
            return text
        obj = _try_parse_json(raw or "")
        if not obj:
            raise GenerationError(f"Received no JSON {mode.value} response from the model.")
        return _VALIDATORS[mode](obj)
