"""LLM service for build anomaly verdicts"""
import logging
from typing import List, Optional

import httpx
from langchain_core.language_models.chat_models import BaseChatModel
from langchain_core.messages import BaseMessage, HumanMessage, SystemMessage
from langchain_ollama import ChatOllama
from ollama import ResponseError

from ci_memory.core.config import Settings, get_settings
from ci_memory.core.exceptions import AnalysisError, AnalysisTimeoutError
from ci_memory.core.prompts import SYSTEM_PROMPT


logger = logging.getLogger(__name__)


class LLMService:
    """Single request/response call to the analysis model in strict JSON mode"""

    def __init__(self, chat_model: Optional[BaseChatModel] = None, settings: Optional[Settings] = None,
                 system_prompt: str = SYSTEM_PROMPT):
        self.system_prompt = system_prompt
        if chat_model is not None:
            self.llm = chat_model
            return

        settings = settings or get_settings()
        self.llm = ChatOllama(
            model=settings.ollama_llm_model,
            base_url=settings.ollama_base_url,
            temperature=settings.ollama_llm_temperature,
            format="json",
            client_kwargs={"timeout": settings.ollama_llm_timeout},
        )
        logger.info(
            f"[OK] LLM Service initialized - "
            f"model={settings.ollama_llm_model}, "
            f"temperature={settings.ollama_llm_temperature}, "
            f"timeout={settings.ollama_llm_timeout}s"
        )

    def build_request(self, history: List[BaseMessage], instruction: str) -> List[BaseMessage]:
        return [SystemMessage(content=self.system_prompt), *history, HumanMessage(content=instruction)]

    def analyze(self, history: List[BaseMessage], instruction: str) -> str:
        """Return the raw model output; transport problems become AnalysisError"""
        request = self.build_request(history, instruction)
        logger.debug(f"[LLM] Sending {len(request)} messages")
        try:
            response = self.llm.invoke(request)
        except (httpx.TimeoutException, TimeoutError) as e:
            raise AnalysisTimeoutError(f"Analysis call timed out: {e}") from e
        except (httpx.HTTPError, ResponseError, ConnectionError) as e:
            raise AnalysisError(f"Analysis call failed: {e}") from e

        content = response.content
        if isinstance(content, list):
            # some providers return content blocks
            content = "".join(part if isinstance(part, str) else part.get("text", "") for part in content)
        if not content or not content.strip():
            raise AnalysisError("Empty response from analysis service")
        return content
