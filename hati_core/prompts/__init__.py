"""系统人设提示词加载工具。

人设文本不写死在代码里：默认读取包内 prompts/<locale>/hati_persona.md，
配置了 persona_prompt_file 时改为读取该文件。
"""

from functools import lru_cache
from pathlib import Path
from typing import Optional


PROMPTS_DIR = Path(__file__).resolve().parent


@lru_cache(maxsize=8)
def load_persona_prompt(path: Optional[str] = None, locale: str = "en") -> str:
    """加载人设系统提示词文本。"""

    fname = Path(path).expanduser() if path else PROMPTS_DIR / locale / "hati_persona.md"
    return fname.read_text(encoding="utf-8").strip()
