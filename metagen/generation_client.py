"""
Metadata generation client for the batch pipeline.

Sends one image to the configured AI backend and turns the answer into a
``Metadata`` value (SEO title, description and keywords).

Features:
- Gemini (Generative Language REST API over aiohttp) and OpenRouter
  (OpenAI-compatible, through the openai SDK) backends
- Bounded per-request timeout
- Tolerant parsing of JSON answers (raw, fenced or embedded in prose)
- Keyword normalization with the stock-site forbidden word list

The client does not retry; a failed call is one failed image.
"""
import asyncio
import base64
import json
import logging
import mimetypes
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

import aiohttp
import openai
from openai import OpenAI

from .errors import GenerationError, GenerationTimeout, StorageIOError
from .pipeline_config import config

logger = logging.getLogger(__name__)


BASE_PROMPT = """Generate SEO friendly title, description, and keywords(single word) as a JSON object for the following image. Only return the JSON. Do not include any other text.
{
    "title": "generated title",
    "description": "generated description",
    "keywords": ["keyword1", "keyword2", ...]
}"""

FORBIDDEN_KEYWORDS = [
    "thanksgiving", "valentine", "vintage", "heaven", "heavenly", "retro",
    "god", "love", "valentines", "paradise", "majestic", "magic",
    "rejuvenating", "habitat", "pristine", "revival", "residence",
    "primitive", "zen", "graceful", "fashion", "cinema", "movie", "club",
    "bar", "matrix", "nightlife", "fantasy", "sci-fi", "romantic", "wedding",
    "party", "christmas", "celebration", "easter", "winery", "wine",
    "spooky", "pork", "kaleidoscopic", "mandala", "bohemian", "ethnic",
    "folk", "fairy tale", "story", "celestial", "minimalistic",
]


def build_prompt(title_length: int, description_length: int, keyword_count: int) -> str:
    """Full instruction sent alongside the image"""
    return (
        f"{BASE_PROMPT}\n\n"
        f"Please give me a long perfect title of about {title_length} characters, "
        f"description of about {description_length} characters and as related "
        f"{keyword_count} single SEO keywords based on the Micro stock site and follow "
        f"(Anatomy of Titles: Style, Subject, Location or background) about this image, "
        f"don't use (:,&, |) symbols in title and description;\n\n"
        f"Never use these words in any titles, descriptions, and keywords: "
        f"{', '.join(FORBIDDEN_KEYWORDS)}"
    )


@dataclass(frozen=True)
class Metadata:
    """Generated SEO metadata for one image"""
    title: str
    description: str
    keywords: Tuple[str, ...]

    def to_dict(self) -> Dict[str, Any]:
        return {
            'title': self.title,
            'description': self.description,
            'keywords': list(self.keywords),
        }


class GenerationClient:
    """Adapter to the external AI backend"""

    def __init__(self, backend: Optional[str] = None, timeout: Optional[float] = None,
                 title_length: Optional[int] = None, description_length: Optional[int] = None,
                 keyword_count: Optional[int] = None):
        self.backend = backend or config.generation_backend
        self.timeout = timeout if timeout is not None else config.request_timeout
        self.title_length = title_length or config.title_length
        self.description_length = description_length or config.description_length
        self.keyword_count = keyword_count or config.keyword_count
        self.session: Optional[aiohttp.ClientSession] = None
        self.openai_client: Optional[OpenAI] = None

        if self.backend not in ("gemini", "openrouter"):
            raise ValueError(
                f"Unsupported generation backend: {self.backend}")

    def start_session(self):
        """Create the HTTP session (must run inside the event loop that will use it)"""
        if not self.session or self.session.closed:
            connector = aiohttp.TCPConnector(
                limit=max(10, config.max_concurrent_workers * 2),
                ttl_dns_cache=300,
            )
            self.session = aiohttp.ClientSession(
                connector=connector,
                timeout=aiohttp.ClientTimeout(
                    total=self.timeout, connect=min(10, self.timeout)),
            )
            logger.debug(f"Started {self.backend} generation session (timeout={self.timeout}s)")

    async def close(self):
        """Clean up the HTTP session"""
        if self.session:
            await self.session.close()
            self.session = None
        if self.openai_client:
            self.openai_client.close()
            self.openai_client = None

    async def generate(self, image_path: str) -> Metadata:
        """Generate metadata for the image at ``image_path``

        Raises:
            GenerationError: backend rejected the call or answered with unusable data
            GenerationTimeout: backend did not answer within the timeout
            StorageIOError: the image could not be read from disk
        """
        try:
            with open(image_path, 'rb') as f:
                image_bytes = f.read()
        except OSError as e:
            raise StorageIOError(f"Cannot read {image_path}: {e}")

        mime_type = mimetypes.guess_type(image_path)[0] or 'image/jpeg'
        prompt = build_prompt(
            self.title_length, self.description_length, self.keyword_count)

        if self.backend == "gemini":
            self.start_session()

        try:
            response_text = await asyncio.wait_for(
                self._call_backend(image_bytes, mime_type, prompt),
                timeout=self.timeout,
            )
        except (asyncio.TimeoutError, openai.APITimeoutError):
            raise GenerationTimeout(
                f"{self.backend} did not respond within {self.timeout}s")
        except (aiohttp.ClientError, openai.OpenAIError) as e:
            raise GenerationError(f"{self.backend} request failed: {e!r}")

        data = self._parse_api_response(response_text)
        if data is None:
            raise GenerationError(
                f"Failed to parse {self.backend} response: {response_text[:300]}")

        metadata = self._normalize_metadata(data)
        self._validate_metadata(metadata)
        return metadata

    async def _call_backend(self, image_bytes: bytes, mime_type: str, prompt: str) -> str:
        if self.backend == "openrouter":
            return await self._call_openrouter(image_bytes, mime_type, prompt)
        return await self._call_gemini(image_bytes, mime_type, prompt)

    async def _call_gemini(self, image_bytes: bytes, mime_type: str, prompt: str) -> str:
        """Call the Generative Language generateContent endpoint with an inline image"""
        if not config.gemini_api_key:
            raise GenerationError("Gemini not configured. Set GEMINI_API_KEY.")

        url = f"{config.gemini_api_base}/models/{config.gemini_model}:generateContent"
        body = {
            'contents': [{
                'role': 'user',
                'parts': [
                    {'inline_data': {
                        'mime_type': mime_type,
                        'data': base64.b64encode(image_bytes).decode('ascii'),
                    }},
                    {'text': prompt},
                ],
            }],
            'generationConfig': {
                'temperature': config.generation_temperature,
                'topP': 0.7,
                'topK': 20,
                'maxOutputTokens': 8192,
                'responseMimeType': 'application/json',
            },
        }
        headers = {'x-goog-api-key': config.gemini_api_key}

        async with self.session.post(url, json=body, headers=headers) as resp:
            if resp.status != 200:
                text = await resp.text()
                raise GenerationError(
                    f"Gemini request failed with status {resp.status}: {text[:500]}",
                    details={'status': resp.status})
            payload = await resp.json(content_type=None)

        block_reason = (payload.get('promptFeedback') or {}).get('blockReason')
        if block_reason:
            raise GenerationError(f"Gemini blocked the request: {block_reason}")

        candidates = payload.get('candidates') or []
        if not candidates:
            raise GenerationError("Gemini returned no candidates")

        parts = (candidates[0].get('content') or {}).get('parts') or []
        texts = [p.get('text') for p in parts if isinstance(p, dict) and p.get('text')]
        if not texts:
            finish = candidates[0].get('finishReason', 'unknown')
            raise GenerationError(
                f"Gemini returned an empty answer (finishReason={finish})")
        return '\n'.join(texts)

    def _get_openai_client(self) -> OpenAI:
        if self.openai_client is None:
            self.openai_client = OpenAI(
                base_url=config.openrouter_api_base,
                api_key=config.openrouter_api_key,
                timeout=self.timeout,
                max_retries=0,
            )
            logger.info("OpenRouter client initialized")
        return self.openai_client

    async def _call_openrouter(self, image_bytes: bytes, mime_type: str, prompt: str) -> str:
        """Call OpenRouter via the OpenAI client (runs in thread to avoid blocking)"""
        if not config.openrouter_api_key:
            raise GenerationError(
                "OpenRouter not configured. Set OPENROUTER_API_KEY.")

        client = self._get_openai_client()
        data_url = f"data:{mime_type};base64,{base64.b64encode(image_bytes).decode('ascii')}"
        messages_payload = [{
            'role': 'user',
            'content': [
                {'type': 'text', 'text': prompt},
                {'type': 'image_url', 'image_url': {'url': data_url}},
            ],
        }]
        extra_headers = {
            'HTTP-Referer': config.openrouter_referer,
            'X-Title': config.openrouter_site_title,
        }

        def sync_call():
            return client.chat.completions.create(
                model=config.openrouter_model,
                messages=messages_payload,
                temperature=config.generation_temperature,
                extra_headers=extra_headers,
            )

        completion = await asyncio.to_thread(sync_call)

        choices = getattr(completion, 'choices', None) or []
        if not choices:
            raise GenerationError("OpenRouter returned no choices")

        content = choices[0].message.content if choices[0].message else None
        if isinstance(content, str) and content.strip():
            return content

        # Multimodal models may answer with a list of blocks
        if isinstance(content, list):
            parts = []
            for block in content:
                if isinstance(block, dict):
                    t = block.get('text')
                    if isinstance(t, str) and t.strip():
                        parts.append(t.strip())
                elif isinstance(block, str) and block.strip():
                    parts.append(block.strip())
            if parts:
                return '\n'.join(parts)

        raise GenerationError('Unable to extract OpenRouter completion text')

    def _parse_api_response(self, response_text: str) -> Optional[Dict[str, Any]]:
        """Parse an answer that might be wrapped in markdown or prose"""
        if not response_text or not response_text.strip():
            return None

        candidates = [response_text.strip()]

        # 1) fenced JSON (```json or ```)
        m = re.search(r"```(?:json)?\s*(.*?)```", response_text,
                      re.DOTALL | re.IGNORECASE)
        if m:
            candidates.append(m.group(1).strip())

        # 2) first inline JSON object/array
        m = re.search(r"(\{.*\}|\[.*\])", response_text, re.DOTALL)
        if m:
            candidates.append(m.group(1))

        for candidate in candidates:
            try:
                parsed = json.loads(candidate)
            except ValueError:
                continue
            # Some models wrap a single object in a list
            if isinstance(parsed, list) and parsed and isinstance(parsed[0], dict):
                parsed = parsed[0]
            if isinstance(parsed, dict):
                return parsed

        return None

    def _normalize_metadata(self, api_data: Dict[str, Any]) -> Metadata:
        """Normalize a parsed answer to the Metadata shape"""
        title = api_data.get('title') or ''
        description = api_data.get('description') or ''
        keywords = api_data.get('keywords') or []

        title = str(title).strip()
        description = str(description).strip()

        # Ensure keywords is a list; split comma-separated strings if present
        if isinstance(keywords, str):
            keywords = [k for k in keywords.split(',')]
        elif not isinstance(keywords, list):
            keywords = []

        forbidden = {w.lower() for w in FORBIDDEN_KEYWORDS}
        cleaned: List[str] = []
        seen = set()
        for keyword in keywords:
            if not isinstance(keyword, str):
                continue
            k = keyword.strip().strip('"').strip("'").lower()
            if not k or k in forbidden or k in seen:
                continue
            seen.add(k)
            cleaned.append(k)

        return Metadata(
            title=title,
            description=description,
            keywords=tuple(cleaned[:self.keyword_count]),
        )

    @staticmethod
    def _validate_metadata(metadata: Metadata):
        missing = []
        if not metadata.title:
            missing.append('title')
        if not metadata.description:
            missing.append('description')
        if not metadata.keywords:
            missing.append('keywords')
        if missing:
            raise GenerationError(
                f"Incomplete metadata: missing {', '.join(missing)}",
                details={'missing': missing})
