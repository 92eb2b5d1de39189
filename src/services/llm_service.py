"""
LLM orchestration: course outline extraction, daily briefing and prompts.
"""

import json
import logging
import re
import time
from collections.abc import Iterable
from typing import Any, Optional

from langchain_core.messages import HumanMessage, SystemMessage
from langchain_openai import ChatOpenAI

import config
from services.document_processor import PDFProcessor
from services.errors import GenerationError
from utils.metrics import log_metric

LOGGER = logging.getLogger(__name__)

OUTLINE_SYSTEM_PROMPT = """You are a highly reliable, detail-oriented assistant that analyzes academic documents and turns them into accurate, structured study plans.

Return ONLY one valid JSON object. No markdown fences, no text outside the JSON.

Schema:
{
  "course_title": "The main title of the entire course document",
  "subject": "Economics | Biology | Physics | History | etc.",
  "topics": [
    {
      "title": "Main topic or chapter title, keep the original numbering",
      "summary": "Summary of the whole topic",
      "subtopics": [
        {
          "title": "Sub-topic title, keep the original numbering",
          "summary": "Summary of the whole sub-topic",
          "parts": [
            {"title": "Concise title of one learning part (max 12 words)", "summary": "One or two sentences"}
          ]
        }
      ]
    }
  ],
  "error": "Only set when the documents cannot be analyzed"
}

Rules:
- Follow the document order; never invent content that is not in the documents.
- Every subtopic has at least one part.
- If the documents are not course material, return {"course_title": "", "topics": [], "error": "reason"}."""

DAILY_BRIEFING_SYSTEM_PROMPT = """You are an encouraging and insightful Study Coach. Give a brief, motivational "Daily Briefing" to a student who is starting a study session.

The input is a JSON object with the student's first name and up to 3 topics they previously rated with low confidence.

Rules:
1. Greet the student by first name (e.g. "Welcome back, Alex!").
2. Frame their earlier work on the weak topics positively.
3. Propose a quick warm-up quiz on one specific weak topic.
4. End with one motivating sentence.
5. 2-4 sentences in plain text.

If "weakTopics" is empty, give a general motivational greeting only."""


def briefing_fallback(user_name: str) -> str:
    return f"Welcome back, {user_name}! Let's get started on your study session."


def _call_llm(
    system_prompt: str,
    user_message: str,
    api_key: str,
    temperature: float = 0.3,
    model: Optional[str] = None,
) -> str:
    """
    Invoke OpenAI Chat with the given messages.

    Args:
        system_prompt: System message content.
        user_message: User message content.
        api_key: OpenAI API key.
        temperature: Model temperature.
        model: Chat model name; defaults to config.OPENAI_MODEL.

    Returns:
        Assistant response content.

    Raises:
        GenerationError: If API key is missing, invalid, quota insufficient or the call failed.
    """
    if not (api_key and api_key.strip()):
        raise GenerationError("Provide a valid OpenAI API key.")
    try:
        llm = ChatOpenAI(
            model=model or config.OPENAI_MODEL,
            api_key=api_key.strip(),
            temperature=temperature,
            timeout=config.LLM_TIMEOUT_S,
        )
        messages = [SystemMessage(content=system_prompt), HumanMessage(content=user_message)]
        response = llm.invoke(messages)
        return response.content if response.content else ""
    except Exception as e:
        LOGGER.warning("llm.call failed (model=%s): %s", model or config.OPENAI_MODEL, e)
        err_msg = str(e).lower()
        if "invalid" in err_msg or "authentication" in err_msg or "incorrect api key" in err_msg:
            raise GenerationError("API key is invalid, check it and try again.") from e
        if "insufficient_quota" in err_msg or "quota" in err_msg or "rate limit" in err_msg:
            raise GenerationError("API quota exhausted or rate limited, try again later.") from e
        if "timeout" in err_msg or "timed out" in err_msg:
            raise GenerationError("The model did not answer in time.") from e
        raise GenerationError(f"Error calling the model: {e!s}") from e


def _strip_json_raw(raw: str) -> str:
    """Remove markdown code fences and surrounding whitespace from LLM output."""
    text = (raw or "").strip()
    if text.startswith("```"):
        text = re.sub(r"^```(?:json)?\s*", "", text)
        text = re.sub(r"\s*```\s*$", "", text)
    return text.strip()


def _extract_json(raw: str, pattern: str, expected: type) -> Any:
    if not raw:
        return expected()
    for candidate in [raw, _strip_json_raw(raw)]:
        try:
            obj = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        return obj if isinstance(obj, expected) else expected()
    match = re.search(pattern, raw)
    if match:
        try:
            obj = json.loads(match.group(0))
        except json.JSONDecodeError:
            return expected()
        return obj if isinstance(obj, expected) else expected()
    return expected()


def _extract_json_object(raw: str) -> dict[str, Any]:
    """Parse a JSON object from LLM output: raw, fence-stripped, then first { to last }. {} on failure."""
    return _extract_json(raw, r"\{[\s\S]*\}", dict)


def _weak_topic_titles(weak_topics: Iterable[Any]) -> list[str]:
    titles: list[str] = []
    for item in weak_topics or []:
        title = item.get("title") if isinstance(item, dict) else item
        title = str(title or "").strip()
        if title:
            titles.append(title)
    return titles[:3]


class LLMProcessor:
    """Outline extraction and coaching messages from course material via OpenAI."""

    def __init__(self) -> None:
        self._documents = PDFProcessor()

    def invoke(
        self,
        system_prompt: str,
        user_message: str,
        api_key: str,
        temperature: float = 0.3,
        model: Optional[str] = None,
    ) -> str:
        """
        Invoke the LLM with custom system and user messages.

        Returns:
            Assistant response text.
        """
        return _call_llm(system_prompt, user_message, api_key, temperature, model)

    def analyze_text(self, text: str, api_key: str) -> dict[str, Any]:
        """
        Turn course text into a study-plan skeleton.

        Returns:
            Dict with "course_title", "topics" and optionally "subject".

        Raises:
            GenerationError: If the call fails, the model reports an error,
                or the answer is not an outline with at least one topic.
        """
        raw = _call_llm(OUTLINE_SYSTEM_PROMPT, text[: config.MAX_DOCUMENT_CHARS], api_key, temperature=0.2)
        obj = _extract_json_object(raw)
        if obj.get("error"):
            raise GenerationError(f"Could not create a study plan: {obj['error']}")
        topics = obj.get("topics")
        if not isinstance(topics, list) or not topics:
            LOGGER.warning("outline.invalid (chars=%s)", len(raw or ""))
            raise GenerationError("Could not create a study plan from this document. Try another file.")
        outline: dict[str, Any] = {
            "course_title": str(obj.get("course_title") or "").strip() or "Untitled Course",
            "topics": topics,
        }
        subject = str(obj.get("subject") or "").strip()
        if subject:
            outline["subject"] = subject
        return outline

    def generate_course_outline(self, documents: Iterable[tuple[str, bytes]], api_key: str) -> dict[str, Any]:
        """
        Analyze uploaded (name, bytes) documents into a study-plan skeleton.

        Raises:
            ValidationError: If no text can be extracted from the documents.
            GenerationError: See analyze_text.
        """
        docs = list(documents)
        start = time.perf_counter()
        text = self._documents.extract_documents(docs, max_chars=config.MAX_DOCUMENT_CHARS)
        outline = self.analyze_text(text, api_key)
        log_metric(
            "outline",
            time.perf_counter() - start,
            documents=len(docs),
            chars=len(text),
            topics=len(outline["topics"]),
        )
        LOGGER.info("outline.generate(documents=%s,topics=%s)", len(docs), len(outline["topics"]))
        return outline

    def generate_daily_briefing(self, user_name: str, weak_topics: Iterable[Any], api_key: str) -> str:
        """
        Short motivational greeting that names up to 3 weak topics.

        Never raises; any failure yields the plain welcome-back message.
        """
        name = (user_name or "").strip() or "there"
        payload = {"userName": name, "weakTopics": _weak_topic_titles(weak_topics)}
        start = time.perf_counter()
        try:
            text = _call_llm(
                DAILY_BRIEFING_SYSTEM_PROMPT,
                json.dumps(payload, ensure_ascii=False, indent=2),
                api_key,
                temperature=0.7,
                model=config.BRIEFING_MODEL,
            ).strip()
        except GenerationError:
            LOGGER.warning("briefing.fallback(user=%s)", name)
            return briefing_fallback(name)
        log_metric("briefing", time.perf_counter() - start, weak_topics=len(payload["weakTopics"]))
        return text or briefing_fallback(name)
