import logging
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

logger = logging.getLogger(__name__)

DEFAULT_PROMPTS_PATH = Path(__file__).resolve().parent.parent / "prompts" / "prompts.yaml"


class PromptLoader:
    def __init__(self, prompts_path: Optional[Path] = None):
        self.prompts_path = Path(prompts_path or DEFAULT_PROMPTS_PATH)
        self._prompts: Dict[str, Any] = {}
        self._load_prompts()

    def _load_prompts(self):
        with open(self.prompts_path, "r", encoding="utf-8") as f:
            self._prompts = yaml.safe_load(f) or {}
        logger.info("Loaded %d prompts from %s", len(self._prompts), self.prompts_path)

    def get(self, key: str, **kwargs) -> str:
        """
        Retrieves a prompt by key and formats it with kwargs.
        """
        template = self._prompts.get(key)
        if not template:
            raise KeyError(f"Prompt key '{key}' not found in {self.prompts_path}")

        try:
            return template.format(**kwargs)
        except KeyError as e:
            raise KeyError(f"Missing argument for prompt '{key}': {e}")
