"""Keyword taxonomy: incident type text → Category. First matching keyword wins."""

import logging
import unicodedata
from typing import Iterable, Optional

from core.models import Category, IncidentRecord, OTHER_CATEGORY

logger = logging.getLogger("incident_map.extractors.classifier")

# Priority order: a type matching keywords of two categories gets the earlier one.
DEFAULT_CATEGORIES = (
    Category("robo", "Robos", "#ef4444", (
        "robo", "hurto", "asalto", "portonazo", "encerrona", "intimidación", "sustracción",
    )),
    Category("accidente", "Accidentes", "#f59e0b", (
        "colisión", "choque", "atropello", "accidente", "volcamiento", "caída en vehículo",
    )),
    Category("salud", "Salud", "#10b981", (
        "lesionado", "persona desmayada", "parturienta", "suicidio", "salud", "oxígeno", "paramédico",
    )),
    Category("sospechoso", "Sospechosos", "#8b5cf6", (
        "sospechoso", "merodeo", "detección de vehículo", "encargo", "hallazgo", "lector ppu",
    )),
    Category("infraestructura", "Infraestructura", "#06b6d4", (
        "semáforo", "luminaria", "hoyo", "hundimiento", "grifo", "sumidero", "tapa cámara",
        "cables cortados", "corte de energía", "corte de agua", "desganche", "árbol",
        "material de arrastre", "poste chocado", "reja de plaza",
    )),
    Category("orden", "Orden Público", "#ec4899", (
        "riña", "pendencia", "ruidos molestos", "consumo de cannabis", "huelga", "manifestación",
        "comercio ambulante", "limpia vidrios",
    )),
)


def fold_text(text: str) -> str:
    """Lowercase and strip diacritics (NFD, drop combining marks)."""
    decomposed = unicodedata.normalize("NFD", text.lower())
    return "".join(ch for ch in decomposed if not unicodedata.combining(ch))


class IncidentClassifier:
    def __init__(self, categories: Iterable[Category] = DEFAULT_CATEGORIES):
        self._categories = tuple(categories)
        self._by_id = {c.id: c for c in self._categories}
        # Folded once here so classify() only folds the incoming text.
        self._index = tuple(
            (c, tuple(k for k in (fold_text(kw) for kw in c.keywords) if k))
            for c in self._categories
        )
        logger.debug("classifier ready categories=%d keywords=%d",
                     len(self._categories), sum(len(kws) for _, kws in self._index))

    @property
    def categories(self) -> tuple:
        return self._categories

    def category(self, category_id: str) -> Optional[Category]:
        if category_id == OTHER_CATEGORY.id:
            return OTHER_CATEGORY
        return self._by_id.get(category_id)

    def classify(self, type_text: Optional[str]) -> Category:
        if not type_text or not type_text.strip():
            return OTHER_CATEGORY
        text = fold_text(type_text)
        for category, keywords in self._index:
            for kw in keywords:
                if kw in text:
                    return category
        return OTHER_CATEGORY


def filter_by_category(records: Iterable[IncidentRecord], category_id: Optional[str]) -> list:
    """Map/panel category filter. None or 'all' keeps everything; feed order preserved."""
    if not category_id or category_id == "all":
        return list(records)
    return [r for r in records if r.category.id == category_id]
