"""
Generative collaborator.

A thin wrapper around LangChain's ChatOpenAI exposing the single operation
the indexer needs: ``async generate(prompt) -> str``. The model is opaque;
timeouts, retries and admission control live in the embedding generator.
"""
from typing import Optional
from langchain_core.messages import HumanMessage, SystemMessage
from langchain_core.output_parsers import StrOutputParser
from langchain_openai import ChatOpenAI

from boltindex.config import settings
from boltindex.core.logging import get_logger

logger = get_logger(__name__)

DESCRIBE_SYSTEM_PROMPT = (
    "You describe source code and documents for a search index. "
    "Answer with a short, factual paragraph covering purpose, main concepts "
    "and notable dependencies. Do not repeat the input."
)


def build_description_prompt(
    content: str,
    language: str,
    content_type: str,
    max_chars: int = settings.max_prompt_chars,
) -> str:
    """
    Content-derived prompt for the semantic aspect.

    Long content is cut to ``max_chars`` so one unit cannot blow the model's
    context window.
    """
    body = content if len(content) <= max_chars else content[:max_chars] + "\n..."
    return f"Language: {language}\nContent type: {content_type}\n\n{body}"


class LLMClient:
    """
    Wrapper around LangChain's ChatOpenAI.
    """

    def __init__(
        self,
        model_name: str = settings.llm_model,
        temperature: float = settings.llm_temperature,
        api_key: Optional[str] = None,
    ):
        self.model_name = model_name
        self.client = ChatOpenAI(
            model=model_name,
            temperature=temperature,
            openai_api_key=api_key
        )
        self._chain = self.client | StrOutputParser()
        logger.info("llm_client_initialized", model=model_name)

    async def generate(self, prompt: str) -> str:
        """
        Single-turn completion.

        Args:
            prompt: Fully rendered prompt text

        Returns:
            Response text (may be empty)
        """
        messages = [
            SystemMessage(content=DESCRIBE_SYSTEM_PROMPT),
            HumanMessage(content=prompt),
        ]
        try:
            return await self._chain.ainvoke(messages)
        except Exception as e:
            logger.error("llm_generate_failed", model=self.model_name, error=str(e))
            raise
