from __future__ import annotations
from typing import Dict, List, Type

from ..core.errors import UnsupportedLanguage
from ..core.models import LanguageId
from ..core.settings import Settings
from .base import LanguageAdapter
from .node_adapter import JavaScriptAdapter, TypeScriptAdapter
from .python_adapter import PythonAdapter
from .rust_adapter import RustAdapter
from .swift_adapter import SwiftAdapter

ADAPTERS: Dict[LanguageId, Type[LanguageAdapter]] = {
    LanguageId.PYTHON: PythonAdapter,
    LanguageId.JAVASCRIPT: JavaScriptAdapter,
    LanguageId.TYPESCRIPT: TypeScriptAdapter,
    LanguageId.RUST: RustAdapter,
    LanguageId.SWIFT: SwiftAdapter,
}


class AdapterRegistry:
    def __init__(self, settings: Settings):
        self.settings = settings
        self._cache: Dict[LanguageId, LanguageAdapter] = {}

    def get(self, language: LanguageId | str) -> LanguageAdapter:
        try:
            lang = LanguageId(language)
        except ValueError:
            raise UnsupportedLanguage(f"unsupported language: {language}") from None
        adapter = self._cache.get(lang)
        if adapter is None:
            profile = self.settings.profile(lang)   # raises when disabled
            adapter = self._cache[lang] = ADAPTERS[lang](profile)
        return adapter

    def languages(self) -> List[LanguageId]:
        return [lang for lang in self.settings.supported_languages() if lang in ADAPTERS]
