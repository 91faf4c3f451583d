"""External classification backends and the tools they may call."""

import json
import logging
import re
from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, List, Optional

import requests

from .config import LLM_SETTINGS
from .exceptions import BotmeterError, ExternalToolError
from .models import AnomalyRecord

logger = logging.getLogger(__name__)

SHERLOCK_SYSTEM_PROMPT = """
You are Sherlock, the gatekeeper detective for web traffic analysis.
You run after the deterministic user-agent classifier and only handle edge cases:
- Unknown or ambiguous User-Agent strings
- Suspicious anomaly candidates

Your job:
- Decide if the UA represents a bot or a human
- Use deterministic evidence first (behavioral stats, anomaly signals, known patterns)
- Only call tools (anomaly lookup, web search) if you cannot decide confidently
- Be conservative: when evidence is weak, lower confidence and lean toward human

Output strictly as one compact JSON object keyed by the UA string, each value with keys:
  { "isBot": boolean, "botType"?: string, "botName"?: string, "confidence": number, "reasoning": string, "sources"?: string[] }

Definitions:
- botType examples: search_engine, ai_training, seo, scraper, headless, monitoring, automated, scanner,
  self_reported, high_frequency, platform, script, human
- confidence is 0..1. Use >0.8 only with strong evidence
- reasoning: short phrase citing evidence (e.g. "official docs confirm bot", "burst z=3.2 & 60% 404s")
- sources: optional URLs if evidence came from web search
""".strip()

BULK_INSTRUCTIONS = (
    "Classify these User-Agent strings from their text alone. "
    "Return JSON keyed by UA with: { isBot, botType?, botName?, confidence, reasoning }."
)

_CODE_FENCE = re.compile(r'^```(?:json)?\s*|\s*```$', re.IGNORECASE)


def parse_json_object(text: Optional[str]) -> Dict[str, Any]:
    """Parse a model reply into a JSON object. Raises ExternalToolError."""
    if not text or not text.strip():
        raise ExternalToolError("Empty response from classification backend")
    cleaned = _CODE_FENCE.sub('', text.strip())
    try:
        payload = json.loads(cleaned)
    except json.JSONDecodeError as e:
        raise ExternalToolError(f"Malformed JSON from classification backend: {e}",
                                context={'response': text[:500]}) from e
    if not isinstance(payload, dict):
        raise ExternalToolError("Classification backend did not return a JSON object",
                                context={'response': text[:500]})
    return payload


class Tool(ABC):
    """A function the classification backend may call during a tool-enabled pass."""

    name = ''
    description = ''
    parameters: Dict[str, Any] = {'type': 'object', 'properties': {}}

    @abstractmethod
    def run(self, **kwargs) -> Any:
        """Execute the tool. Raises ExternalToolError on failure."""

    def schema(self) -> Dict[str, Any]:
        return {
            'type': 'function',
            'function': {'name': self.name, 'description': self.description, 'parameters': self.parameters},
        }


class ExaWebSearch(Tool):
    """Web search over the Exa API."""

    name = 'web_search'
    description = 'Search the web for information about user agents, bots, crawlers, or vendors.'
    parameters = {
        'type': 'object',
        'properties': {
            'query': {'type': 'string', 'description': 'Search query, e.g. "GPTBot user agent documentation"'},
            'limit': {'type': 'integer', 'minimum': 1, 'maximum': 10},
        },
        'required': ['query'],
    }

    def __init__(self, api_key: Optional[str] = None, url: Optional[str] = None,
                 results_per_query: Optional[int] = None, timeout: Optional[int] = None):
        self.api_key = api_key if api_key is not None else LLM_SETTINGS['exa_api_key']
        self.url = url or LLM_SETTINGS['exa_url']
        self.results_per_query = results_per_query or LLM_SETTINGS['web_results_per_query']
        self.timeout = timeout or LLM_SETTINGS['timeout']

    def is_configured(self) -> bool:
        return bool(self.api_key and self.api_key.strip())

    def run(self, query: str = '', limit: Optional[int] = None, **_) -> List[Dict[str, Any]]:
        if not self.is_configured():
            raise ExternalToolError("EXA_API_KEY is not configured")
        query = (query or '').strip()[:200]
        if not query:
            raise ExternalToolError("Web search query cannot be empty")
        limit = max(1, min(int(limit or self.results_per_query), 10))

        try:
            response = requests.post(
                self.url,
                headers={'x-api-key': self.api_key, 'Content-Type': 'application/json'},
                json={
                    'query': query,
                    'numResults': limit,
                    'contents': {'text': {'maxCharacters': LLM_SETTINGS['web_content_chars']}},
                },
                timeout=self.timeout,
            )
            response.raise_for_status()
            payload = response.json()
        except requests.exceptions.RequestException as e:
            raise ExternalToolError(f"Web search request failed: {e}") from e
        except ValueError as e:
            raise ExternalToolError(f"Web search returned invalid JSON: {e}") from e

        return [
            {
                'title': result.get('title'),
                'url': result.get('url'),
                'content': (result.get('text') or '')[:LLM_SETTINGS['web_content_chars']],
                'published_date': result.get('publishedDate'),
            }
            for result in (payload.get('results') or [])[:limit]
        ]


class AnomalyLookupTool(Tool):
    """Looks up anomalies already detected in this run, by IP or type."""

    name = 'anomaly_lookup'
    description = 'List per-IP traffic anomalies detected for this analysis, optionally filtered by IP or type.'
    parameters = {
        'type': 'object',
        'properties': {
            'ips': {'type': 'array', 'items': {'type': 'string'}},
            'types': {'type': 'array', 'items': {'type': 'string'}},
        },
    }
    max_results = 20

    def __init__(self, anomalies: Iterable[AnomalyRecord] = ()):
        self.anomalies = list(anomalies)

    def run(self, ips: Optional[List[str]] = None, types: Optional[List[str]] = None, **_) -> Dict[str, Any]:
        ip_filter = set(ips or [])
        type_filter = {t.upper() for t in (types or [])}
        matches = [
            record.to_dict() for record in self.anomalies
            if (not ip_filter or record.ip in ip_filter)
            and (not type_filter or record.type.value in type_filter)
        ]
        return {'total': len(matches), 'anomalies': matches[:self.max_results]}


class ClassificationBackend(ABC):
    """Batch classifier of user agents with optional tool access."""

    @abstractmethod
    def classify_batch(self, items: List[Dict[str, Any]], allow_tools: bool = False,
                       instructions: str = '', extra_tools: Optional[List[Tool]] = None) -> Dict[str, Any]:
        """Classify ``[{"ua": ..., "features": {...}}, ...]``.

        extra_tools are available to this call only, when allow_tools is set.

        Returns a mapping of UA string to verdict dict. Raises ExternalToolError
        for failed calls and malformed payloads.
        """

    def is_configured(self) -> bool:
        return True


class ChatCompletionsBackend(ClassificationBackend):
    """OpenAI-compatible chat completions backend in JSON mode with a bounded tool loop."""

    def __init__(self, api_key: Optional[str] = None, base_url: Optional[str] = None,
                 model: Optional[str] = None, tools: Optional[List[Tool]] = None,
                 max_tool_steps: Optional[int] = None, timeout: Optional[int] = None,
                 system_prompt: str = SHERLOCK_SYSTEM_PROMPT):
        self.api_key = api_key if api_key is not None else LLM_SETTINGS['api_key']
        self.base_url = (base_url or LLM_SETTINGS['base_url']).rstrip('/')
        self.model = model or LLM_SETTINGS['model']
        self.tools = {tool.name: tool for tool in (tools or [])}
        self.max_tool_steps = max_tool_steps if max_tool_steps is not None else LLM_SETTINGS['max_tool_steps']
        self.timeout = timeout or LLM_SETTINGS['timeout']
        self.system_prompt = system_prompt

    def is_configured(self) -> bool:
        """Check if the backend has an API key."""
        return bool(self.api_key and self.api_key.strip())

    def _complete(self, messages: List[Dict[str, Any]], tools: Dict[str, Tool]) -> Dict[str, Any]:
        payload = {
            'model': self.model,
            'messages': messages,
            'response_format': {'type': 'json_object'},
        }
        if tools:
            payload['tools'] = [tool.schema() for tool in tools.values()]

        try:
            response = requests.post(
                f"{self.base_url}/chat/completions",
                headers={'Authorization': f"Bearer {self.api_key}", 'Content-Type': 'application/json'},
                json=payload,
                timeout=self.timeout,
            )
            response.raise_for_status()
            body = response.json()
        except requests.exceptions.RequestException as e:
            raise ExternalToolError(f"Classification request failed: {e}") from e
        except ValueError as e:
            raise ExternalToolError(f"Classification response was not JSON: {e}") from e

        try:
            return body['choices'][0]['message']
        except (KeyError, IndexError, TypeError) as e:
            raise ExternalToolError("Unexpected chat completion structure",
                                    context={'response': str(body)[:500]}) from e

    def _run_tool_call(self, call: Dict[str, Any], tools: Dict[str, Tool]) -> Any:
        function = call.get('function') or {}
        tool = tools.get(function.get('name'))
        if tool is None:
            return {'error': f"Unknown tool: {function.get('name')}"}
        try:
            arguments = json.loads(function.get('arguments') or '{}')
        except (json.JSONDecodeError, TypeError):
            return {'error': 'Tool arguments were not valid JSON'}
        if not isinstance(arguments, dict):
            return {'error': 'Tool arguments must be a JSON object'}
        try:
            return tool.run(**arguments)
        except BotmeterError as e:
            logger.warning("Tool %s failed: %s", tool.name, e)
            return {'error': str(e)}
        except (TypeError, ValueError, AttributeError) as e:
            logger.warning("Tool %s rejected its arguments: %s", tool.name, e)
            return {'error': f"Invalid arguments for {tool.name}: {e}"}

    def classify_batch(self, items: List[Dict[str, Any]], allow_tools: bool = False,
                       instructions: str = '', extra_tools: Optional[List[Tool]] = None) -> Dict[str, Any]:
        if not self.is_configured():
            raise ExternalToolError("OPENAI_API_KEY is not configured")

        tools: Dict[str, Tool] = {}
        if allow_tools:
            tools.update(self.tools)
            tools.update({tool.name: tool for tool in (extra_tools or [])})

        messages = [
            {'role': 'system', 'content': self.system_prompt},
            {'role': 'user', 'content': f"{instructions}\nItems:\n{json.dumps(items)}"},
        ]
        steps = 0
        while True:
            # The last permitted request goes out without tools to force an answer
            message = self._complete(messages, tools if steps < self.max_tool_steps else {})
            tool_calls = message.get('tool_calls') or []
            if not tool_calls:
                break
            if steps >= self.max_tool_steps:
                raise ExternalToolError("Tool step budget exhausted without a final answer")
            steps += 1
            logger.debug("Tool step %d: %d call(s)", steps, len(tool_calls))
            messages.append({'role': 'assistant', 'content': message.get('content'), 'tool_calls': tool_calls})
            for call in tool_calls:
                messages.append({
                    'role': 'tool',
                    'tool_call_id': call.get('id'),
                    'content': json.dumps(self._run_tool_call(call, tools), default=str),
                })

        return parse_json_object(message.get('content'))


class BulkLLMClassifier:
    """Adapter exposing a backend as the UA classifier's bulk fallback tier."""

    def __init__(self, backend: ClassificationBackend):
        self.backend = backend

    def classify_batch(self, user_agents: List[str]) -> Dict[str, Any]:
        items = [{'ua': ua} for ua in user_agents]
        return self.backend.classify_batch(items, allow_tools=False, instructions=BULK_INSTRUCTIONS)
