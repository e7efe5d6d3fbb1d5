from typing import Optional

from langchain_openai import ChatOpenAI

from clipthread.app.core.config import Settings, settings as default_settings


def get_llm(config: Optional[Settings] = None, model: Optional[str] = None):
    """
    Returns a configured LangChain ChatModel using OpenRouter.
    Retries are left to the caller; each classifier call is bounded by its own timeout.
    """
    config = config or default_settings
    return ChatOpenAI(
        base_url=config.LLM_BASE_URL,
        api_key=config.OPEN_ROUTER_API_KEY,
        model=model or config.LLM_MODEL,
        temperature=0,
        max_retries=0,
    )
