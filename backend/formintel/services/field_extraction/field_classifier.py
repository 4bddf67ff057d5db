"""
LLM Field Classifier
====================

Turns a classification prompt into a validated list of FieldCandidate
objects.

Per invocation the classifier runs a fixed sequence:

1. Attempt 1: send the request. Transport errors propagate. A completion
   cut off by the token limit with no content raises TruncatedResponseError;
   any other empty completion raises EmptyResponseError. Otherwise the
   content is parsed directly (bare array, or object with a "fields" array).
2. Attempt 2: on a parse failure the identical request is sent once more,
   with the same checks. A fresh sample is more trustworthy than a
   syntactic fix of a bad one.
3. Repair: the attempt-2 content is run through the JSON repair pipeline
   and parsed.
4. Extraction: the first fenced or bare array/object is cut out of the
   attempt-2 content, repaired and parsed.
5. Otherwise ResponseParseError, carrying the response length, a preview,
   the finish reason and whether the JSON looked truncated.

The classifier never returns an empty list in place of a failure; an empty
list means the model reported a form with no fields.
"""

import json
import time
import logging
from typing import Any, List, Optional, Tuple

from formintel.exceptions import EmptyResponseError, ResponseParseError, TruncatedResponseError
from formintel.services.llm_client import LlmClient, LlmCompletion, MessageContent

from .fields import BatchResult, TokenUsage, fields_from_dicts
from .json_repair import extract_json_candidate, is_likely_truncated, repair_json, strip_markdown_fences

logger = logging.getLogger(__name__)

PREVIEW_CHARS = 500


class LlmFieldClassifier:
    """Classifier with retry-then-repair parsing of the model's field list."""

    # Base instructions shared by the OCR and image classification paths
    SYSTEM_PROMPT = """You are an expert at analysing scanned and digital forms and extracting their fields.

Return ONLY a JSON array of field objects (no prose, no markdown). Each field object has:
- "label": the question or field label exactly as written (empty string for display-only labels)
- "type": one of text, email, tel, number, textarea, select, date, radio-with-other, checkbox-with-other, rating, file, signature, payment, label
- "required": true if the field is marked required (asterisk, "required", "(req)"), else false
- "placeholder": placeholder or hint text, if any
- "options": ordered list of option texts for select/radio/checkbox/rating fields, otherwise omit
- "allowOther": true when an "Other" option with a free-text box exists (do not list "Other" in options)
- "otherLabel" / "otherPlaceholder": label and hint for the "Other" free-text box, when present
- "richTextContent": for type "label" only, the display text with simple tags (<h1>, <h2>, <p>, <b>, <i>, <ul>, <li>)
- "confidence": 0.0-1.0, how sure you are of the type and label
- "pageNumber": the page the field appears on
- "yPosition": vertical position of the field on its page as a fraction of page height (0 = top)

Rules:
- List fields in reading order, top to bottom, left to right.
- Group the options of one question into a single field; never emit an option as its own field.
- Titles, section headers, instructions and disclaimers are "label" fields with richTextContent.
- Signature lines are type "signature"; upload areas are type "file"."""

    def __init__(self, llm_client: LlmClient, model: Optional[str] = None):
        """
        Args:
            llm_client: Provider client used for both attempts
            model: Model override (e.g. the vision model for image sections)
        """
        self.llm_client = llm_client
        self.model = model

    def classify(
        self,
        system_prompt: str,
        user_content: MessageContent,
        reasoning_effort: Optional[str] = None
    ) -> BatchResult:
        """
        Classify one prompt into fields.

        Raises:
            ProviderError: transport failure on either attempt
            TruncatedResponseError: token limit hit before any content
            EmptyResponseError: completion without content
            ResponseParseError: content unusable after retry, repair and extraction
        """
        start_time = time.time()

        completion = self._request(system_prompt, user_content, reasoning_effort, attempt=1)
        usage = TokenUsage.from_dict(completion.usage)
        raw_fields = self._parse_direct(completion.content)
        attempts = 1
        repairs: Tuple[str, ...] = ()

        if raw_fields is None:
            logger.warning(
                f"Attempt 1 returned unparseable JSON ({len(completion.content)} chars), retrying"
            )
            completion = self._request(system_prompt, user_content, reasoning_effort, attempt=2)
            usage = usage + TokenUsage.from_dict(completion.usage)
            attempts = 2
            raw_fields = self._parse_direct(completion.content)

            if raw_fields is None:
                raw_fields, repairs = self._parse_repaired(completion)

        fields = fields_from_dicts(raw_fields)
        processing_time_ms = int((time.time() - start_time) * 1000)
        logger.info(
            f"Classified {len(fields)} fields in {processing_time_ms}ms "
            f"(attempts={attempts}, finish_reason={completion.finish_reason}"
            f"{', repaired: ' + ', '.join(repairs) if repairs else ''})"
        )
        return BatchResult(
            fields=fields,
            token_usage=usage,
            processing_time_ms=processing_time_ms,
            finish_reason=completion.finish_reason,
            repairs_applied=list(repairs),
            attempts=attempts
        )

    def _request(
        self,
        system_prompt: str,
        user_content: MessageContent,
        reasoning_effort: Optional[str],
        attempt: int
    ) -> LlmCompletion:
        completion = self.llm_client.complete(
            system_prompt,
            user_content,
            reasoning_effort=reasoning_effort,
            model=self.model
        )
        if not completion.content.strip():
            if completion.finish_reason == 'length':
                raise TruncatedResponseError(
                    f"Response hit the token limit before producing content (attempt {attempt})",
                    finish_reason=completion.finish_reason,
                    likely_truncated=True
                )
            raise EmptyResponseError(
                f"Response contained no content (attempt {attempt}, "
                f"finish_reason={completion.finish_reason})",
                finish_reason=completion.finish_reason
            )
        return completion

    @staticmethod
    def _as_field_list(data: Any) -> Optional[List[Any]]:
        if isinstance(data, list):
            return data
        if isinstance(data, dict) and isinstance(data.get('fields'), list):
            return data['fields']
        return None

    def _parse_direct(self, content: str) -> Optional[List[Any]]:
        try:
            data = json.loads(strip_markdown_fences(content))
        except json.JSONDecodeError:
            return None
        return self._as_field_list(data)

    def _parse_repaired(self, completion: LlmCompletion) -> Tuple[List[Any], Tuple[str, ...]]:
        content = completion.content

        repaired = repair_json(strip_markdown_fences(content))
        raw_fields = self._try_load(repaired.text)
        if raw_fields is not None:
            logger.warning(f"Parsed response after repair: {', '.join(repaired.applied) or 'no changes'}")
            return raw_fields, repaired.applied

        candidate = extract_json_candidate(content)
        if candidate is not None:
            repaired = repair_json(candidate)
            raw_fields = self._try_load(repaired.text)
            if raw_fields is not None:
                logger.warning(
                    f"Parsed extracted JSON after repair: {', '.join(repaired.applied) or 'no changes'}"
                )
                return raw_fields, ('extract_json',) + repaired.applied

        truncated = is_likely_truncated(content)
        logger.error(
            f"Could not parse classifier response after retry and repair "
            f"({len(content)} chars, finish_reason={completion.finish_reason}, likely_truncated={truncated})"
        )
        logger.debug(f"Unparseable response preview: {content[:PREVIEW_CHARS]}")
        raise ResponseParseError(
            f"Classifier response could not be parsed as a field list "
            f"({len(content)} chars{', likely truncated' if truncated else ''})",
            response_length=len(content),
            preview=content[:PREVIEW_CHARS],
            finish_reason=completion.finish_reason,
            likely_truncated=truncated
        )

    def _try_load(self, text: str) -> Optional[List[Any]]:
        try:
            return self._as_field_list(json.loads(text))
        except json.JSONDecodeError:
            return None
