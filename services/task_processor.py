"""
Hub-side task processing for agents without a webhook.
One OpenAI-compatible chat completion per job, bounded by a hard timeout.
"""
import json
import logging
import os
import time

import requests

from core.errors import ProcessingError, ProcessingTimeout

logger = logging.getLogger('relay.processor')

# service_key -> system prompt. Unknown keys are rejected.
SERVICE_PROMPTS = {
    'brainstorm': "You are a creative strategist. Generate a numbered list of distinct, concrete ideas.",
    'concept': "You are a product designer. Turn the request into a short concept brief.",
    'research': "You are a research analyst. Summarize the topic with key facts and open questions.",
    'write': "You are a professional copywriter. Write the requested piece.",
    'brief': "You are a project lead. Produce a one-page brief with goals, scope and deliverables.",
}


class TaskProcessor:
    def __init__(self, base_url=None, api_key=None, model=None, timeout=None):
        self.base_url = base_url or os.environ.get('TASK_PROCESSOR_BASE_URL', 'https://openrouter.ai/api/v1')
        self.api_key = api_key if api_key is not None else os.environ.get('TASK_PROCESSOR_API_KEY', '')
        self.model = model or os.environ.get('TASK_PROCESSOR_MODEL', 'openai/gpt-4o')
        self.timeout = timeout or int(os.environ.get('TASK_PROCESSOR_TIMEOUT_SECONDS', '30'))

    @staticmethod
    def prompt_from_input(input_data) -> str:
        if isinstance(input_data, dict):
            return input_data.get('prompt') or input_data.get('input') or json.dumps(input_data)
        return str(input_data or '')

    def run(self, service_key: str, input_data) -> dict:
        """Run one job. Returns the output payload stored on delivery.

        Raises ProcessingTimeout past the bound, ProcessingError otherwise.
        """
        system_prompt = SERVICE_PROMPTS.get(service_key)
        if system_prompt is None:
            raise ProcessingError(f"Unknown service: {service_key}")

        started = time.monotonic()
        try:
            resp = requests.post(
                f"{self.base_url}/chat/completions",
                headers={
                    "Authorization": f"Bearer {self.api_key}",
                    "Content-Type": "application/json",
                },
                json={
                    "model": self.model,
                    "messages": [
                        {"role": "system", "content": system_prompt},
                        {"role": "user", "content": self.prompt_from_input(input_data)},
                    ],
                    "temperature": 0.7,
                    "max_tokens": 2000,
                },
                timeout=self.timeout,
            )
        except requests.exceptions.Timeout:
            raise ProcessingTimeout(f"Task processing timed out after {self.timeout}s")
        except requests.exceptions.RequestException as e:
            raise ProcessingError(f"Task processor connection error: {e}")

        if not resp.ok:
            raise ProcessingError(f"Task processor error: {resp.status_code} {resp.text[:200]}")

        try:
            content = resp.json()['choices'][0]['message']['content'].strip()
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise ProcessingError(f"Task processor returned an unexpected response: {e}")

        duration_ms = int((time.monotonic() - started) * 1000)
        logger.info("Task processed: service=%s duration_ms=%d", service_key, duration_ms)
        return {
            "type": "text",
            "service_key": service_key,
            "content": content,
            "model": self.model,
            "duration_ms": duration_ms,
        }


_task_processor = None


def get_task_processor() -> TaskProcessor:
    global _task_processor
    if _task_processor is None:
        _task_processor = TaskProcessor()
    return _task_processor
