from isp_support.services.llm.base import LLMProvider, LLMResponse
from isp_support.services.llm.openai_provider import OpenAIProvider

__all__ = ["LLMProvider", "LLMResponse", "OpenAIProvider"]
