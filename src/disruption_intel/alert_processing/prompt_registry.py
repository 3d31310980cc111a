"""
Jinja template store for the generation and update-check instructions.

Each template opens with a YAML block fenced by ``---METADATA---`` lines
(name, version, purpose). The block is stripped before rendering and kept
for inspection.
"""
import re
from pathlib import Path
from typing import Any, Callable, Mapping

import yaml
from jinja2 import BaseLoader, Environment, StrictUndefined, TemplateNotFound
from pydantic import BaseModel, ConfigDict

PROMPTS_PATH = Path(__file__).resolve().parent / "prompts"

_FRONT_MATTER = re.compile(r"\A\s*---METADATA---\s*\n(.*?)\n---METADATA---[ \t]*\n?", re.DOTALL)


class PromptMetadata(BaseModel):
    model_config = ConfigDict(extra="allow", frozen=True)

    name: str | None = None
    version: str | None = None
    purpose: str | None = None


def split_front_matter(source: str) -> tuple[dict[str, Any], str]:
    """Return (metadata, body). Text without a closed metadata block is all body."""
    match = _FRONT_MATTER.match(source)
    if match is None:
        return {}, source
    meta = yaml.safe_load(match.group(1)) or {}
    if not isinstance(meta, dict):
        raise ValueError(f"Prompt metadata must be a mapping, got {type(meta).__name__}")
    return meta, source[match.end():]


class _PromptLoader(BaseLoader):
    def __init__(self, root: Path) -> None:
        self.root = root
        self.metadata: dict[str, dict[str, Any]] = {}

    def get_source(self, environment: Environment, template: str):
        path = self.root / template
        if not path.is_file():
            raise TemplateNotFound(template)
        mtime = path.stat().st_mtime
        meta, body = split_front_matter(path.read_text(encoding="utf-8"))
        self.metadata[template] = meta
        return body, str(path), lambda: path.is_file() and path.stat().st_mtime == mtime


class PromptRegistry:
    """
    Renders prompt templates from one directory.

    Rendering uses ``StrictUndefined``: a context variable missing from a
    template call raises ``jinja2.UndefinedError``.
    """

    def __init__(
            self,
            prompts_path: str | Path = PROMPTS_PATH,
            filters: Mapping[str, Callable[..., Any]] | None = None,
    ) -> None:
        root = Path(prompts_path)
        if not root.is_dir():
            raise FileNotFoundError(f"Prompts directory not found: {root}")
        self._root = root
        self._loader = _PromptLoader(root)
        self._env = Environment(
            loader=self._loader,
            autoescape=False,
            undefined=StrictUndefined,
            trim_blocks=True,
            lstrip_blocks=True,
        )
        self._env.filters.update(filters or {})

    def validate_files(self, filenames: list[str]) -> None:
        """
        Check that every named template exists.

        :raises FileNotFoundError: listing all missing templates
        """
        missing = [name for name in filenames if not (self._root / name).is_file()]
        if missing:
            raise FileNotFoundError(f"Prompt templates missing from {self._root}: {', '.join(missing)}")

    def get_metadata(self, template_name: str) -> PromptMetadata:
        if template_name not in self._loader.metadata:
            self._loader.get_source(self._env, template_name)
        return PromptMetadata.model_validate(self._loader.metadata[template_name])

    def render(self, template_name: str, context: Mapping[str, Any]) -> str:
        return self._env.get_template(template_name).render(**context).strip()
