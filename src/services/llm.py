import httpx
import ollama
from src.config import settings
from src.services.logger import logger
import json
from typing import Dict, Any, Optional
from tenacity import retry, stop_after_attempt, stop_after_delay, wait_exponential, retry_if_exception_type

class LLMService:
    def __init__(self, host: Optional[str] = None, model: Optional[str] = None, timeout: Optional[float] = None):
        self.client = ollama.AsyncClient(
            host=host or settings.OLLAMA_BASE_URL,
            timeout=timeout or settings.LLM_REQUEST_TIMEOUT_SECONDS,
        )
        self.model = model or settings.OLLAMA_MODEL

    @retry(
        stop=stop_after_attempt(3) | stop_after_delay(settings.LLM_BUDGET_SECONDS),
        wait=wait_exponential(multiplier=1, min=2, max=30),
        retry=retry_if_exception_type((ollama.ResponseError, httpx.TransportError, ConnectionError)),
        reraise=True,
        before_sleep=lambda retry_state: logger.warning(
            f"LLM call failed, retrying in {retry_state.next_action.sleep} seconds... (attempt {retry_state.attempt_number})"
        )
    )
    async def generate_json(self, prompt: str) -> Dict[str, Any]:
        """
        Generates JSON output from the LLM with retry on failure.
        Returns an empty dict if the model answers with something that is not JSON.
        """
        response = await self.client.chat(model=self.model, messages=[
            {'role': 'user', 'content': prompt}
        ], format='json', options={'temperature': 0.1})

        content = response['message']['content']

        try:
            data = json.loads(content)
        except json.JSONDecodeError:
            logger.error(f"Failed to parse JSON from LLM: {content[:200]}")
            return {}
        return data if isinstance(data, dict) else {}
