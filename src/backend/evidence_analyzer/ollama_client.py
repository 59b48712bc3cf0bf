import logging
import os

import requests
from dotenv import load_dotenv

from .errors import OracleError

load_dotenv()

logger = logging.getLogger(__name__)

# ── LLM generation options (from .env) ──
OLLAMA_BASE_URL = os.getenv("OLLAMA_BASE_URL", "http://127.0.0.1:11434")
OLLAMA_MODEL = os.getenv("OLLAMA_MODEL", "llama3.1")
OLLAMA_TIMEOUT = int(os.getenv("OLLAMA_TIMEOUT", "600"))
OLLAMA_TEMPERATURE = float(os.getenv("OLLAMA_TEMPERATURE", "0.0"))
OLLAMA_TOP_P = float(os.getenv("OLLAMA_TOP_P", "1.0"))
OLLAMA_SEED = int(os.getenv("OLLAMA_SEED", "42"))
ORACLE_MAX_OUTPUT_TOKENS = int(os.getenv("ORACLE_MAX_OUTPUT_TOKENS", "4000"))

SYSTEM_PROMPT = (
    "You are a compliance analyst. Answer with a single JSON object and nothing else."
)


class OllamaClient:
    """
    Language-model oracle over the Ollama chat API. Failures surface as
    OracleError and are not retried here.
    """

    def __init__(self, model: str = None, base_url: str = None, timeout: int = None):
        self.model = model or OLLAMA_MODEL
        self.base_url = base_url or OLLAMA_BASE_URL
        self.timeout = timeout or OLLAMA_TIMEOUT

    def generate(self, prompt: str, model_id: str = None, max_output_tokens: int = None) -> str:
        model = model_id or self.model
        if not model:
            raise OracleError("No language model configured")

        # format:"json" is not requested; reasoning models need their <think>
        # chain and the verdict parser strips it.
        payload = {
            "model": model,
            "stream": False,
            "options": {
                "temperature": OLLAMA_TEMPERATURE,
                "top_p": OLLAMA_TOP_P,
                "num_predict": max_output_tokens or ORACLE_MAX_OUTPUT_TOKENS,
                "seed": OLLAMA_SEED,
            },
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": prompt},
            ],
        }
        try:
            r = requests.post(f"{self.base_url}/api/chat", json=payload, timeout=self.timeout)
            r.raise_for_status()
            body = r.json()
        except requests.HTTPError as e:
            if e.response is not None and e.response.status_code == 404:
                raise OracleError(f"Model '{model}' is not available") from e
            raise OracleError(f"Model call failed: {e}") from e
        except (requests.RequestException, ValueError) as e:
            raise OracleError(f"Model call failed: {e}") from e

        if body.get("error"):
            raise OracleError(f"Model returned an error: {body['error']}")
        content = (body.get("message") or {}).get("content") or ""
        if not content.strip():
            raise OracleError(f"Model '{model}' returned an empty response")
        logger.debug("Model %s returned %d characters", model, len(content))
        return content
