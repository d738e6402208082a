"""提示词模板加载工具。

按语言(locale) 从 prompts/<locale> 目录读取模板文本，
目前提供 zh 与 en 两种语言的继续指令模板。
"""

from functools import lru_cache
from pathlib import Path


PROMPTS_DIR = Path(__file__).resolve().parent


@lru_cache(maxsize=None)
def load_prompt(name: str, locale: str = "zh") -> str:
    """根据模板名和语言加载提示词文本，找不到该语言时回落到 zh。"""

    fname = PROMPTS_DIR / locale / f"{name}.md"
    if not fname.exists():
        fname = PROMPTS_DIR / "zh" / f"{name}.md"
    return fname.read_text(encoding="utf-8")
