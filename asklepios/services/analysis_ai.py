"""AI interpretation of confirmed biomarker text.

The provider is asked for a JSON object::

    {"biomarkers": [{"name", "value", "unit", "referenceRange", "status", "category",
                     "recommendation", "education"}],
     "summary": "...", "recommendations": ["..."]}

Older prompts answered with ``markers`` instead of ``biomarkers``; both are
accepted. Anything that is not a JSON object of this shape is a hard failure:
no partial extraction from prose is attempted.
"""
from __future__ import annotations

import json
import logging
import os
import re
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

import httpx

from asklepios.models.biomarker import CATEGORIES, RESULT_STATUSES
from asklepios.services.llm import AI_TIMEOUT_SECONDS, chat_completion
from asklepios.services.reference_ranges import classify
from asklepios.utils.exceptions import AnalysisError, ProviderError

logger = logging.getLogger("asklepios")

ANALYSIS_API_KEY = os.getenv("DEEPSEEK_API_KEY")
ANALYSIS_API_BASE = os.getenv("ANALYSIS_API_BASE", "https://api.deepseek.com/v1")
ANALYSIS_MODEL = os.getenv("ANALYSIS_MODEL", "deepseek-chat")
ANALYSIS_MAX_TOKENS = 2000
ANALYSIS_TEMPERATURE = 0.3

ANALYSIS_SYSTEM_PROMPT = (
    "Ты - опытный врач-лабораторный диагност. Тебе дают результаты анализа крови, "
    "по одному показателю на строку в формате \"<название>: <значение> <единицы>\". "
    "Верни ТОЛЬКО JSON-объект со структурой: "
    '{"biomarkers": [{"name": "...", "value": "...", "unit": "...", '
    '"referenceRange": "мин-макс единицы", "status": "normal|low|high|critical", '
    '"category": "blood|immunity|coagulation|metabolism|lipids|cardiovascular|kidney|liver|hormonal|other", '
    '"recommendation": "...", "education": "..."}], '
    '"summary": "краткое резюме", "recommendations": ["..."]}. '
    "Пиши на русском языке, без markdown."
)

_FENCE = re.compile(r"^\s*```[a-zA-Z]*\s*\n?(?P<body>.*?)\n?\s*```\s*$", re.DOTALL)
_VALUE_WITH_UNIT = re.compile(r"^\s*(?P<value>[-+]?\d[\d.,]*)\s*(?P<unit>.*)$")

# Short explanations used when the provider leaves ``education`` empty.
EDUCATION_NOTES = (
    (("гемоглобин", "hemoglobin"),
     "Гемоглобин - белок в эритроцитах, переносящий кислород. Норма: мужчины 130-160 г/л, женщины 120-140 г/л."),
    (("глюкоза", "glucose"),
     "Глюкоза - основной источник энергии для клеток. Норма натощак: 3.3-5.5 ммоль/л."),
    (("холестерин", "cholesterol"),
     "Холестерин - липид, необходимый для построения клеточных мембран. Норма общего холестерина: < 5.2 ммоль/л."),
    (("креатинин", "creatinine"),
     "Креатинин - продукт распада креатина в мышцах, показатель функции почек. Норма: 60-110 мкмоль/л."),
    (("эритроцит", "rbc", "red blood"),
     "Эритроциты - красные кровяные клетки, переносящие кислород. Норма: 3.5-5.5×10¹²/л."),
    (("лейкоцит", "wbc", "white blood"),
     "Лейкоциты - белые кровяные клетки, защищающие организм от инфекций. Норма: 4.0-9.0×10⁹/л."),
    (("тромбоцит", "platelet", "plt"),
     "Тромбоциты - клетки крови, участвующие в свертывании. Норма: 150-400×10⁹/л."),
)
DEFAULT_RECOMMENDATIONS = (
    "Обсудите результаты анализа с вашим лечащим врачом",
    "Следите за динамикой показателей в течение времени",
)


@dataclass
class AnalysisMarker:
    name: str
    value: str
    unit: str = ""
    status: str = "unknown"
    category: Optional[str] = None
    reference_range: Optional[str] = None
    recommendation: Optional[str] = None
    education: Optional[str] = None


@dataclass
class AnalysisResult:
    biomarkers: List[AnalysisMarker] = field(default_factory=list)
    summary: str = ""
    recommendations: List[str] = field(default_factory=list)

    def to_payload(self) -> Dict[str, Any]:
        """Shape stored in ``BloodAnalysis.results``."""
        return {
            "summary": self.summary,
            "markers": [asdict(m) for m in self.biomarkers],
            "recommendations": list(self.recommendations),
        }


def strip_code_fence(text: str) -> str:
    match = _FENCE.match(text or "")
    if match:
        return match.group("body").strip()
    return (text or "").strip()


def _education_for(name: str) -> Optional[str]:
    key = name.lower()
    for keywords, note in EDUCATION_NOTES:
        if any(word in key for word in keywords):
            return note
    return None


def _opt_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _parse_marker(item: Any, index: int) -> AnalysisMarker:
    if not isinstance(item, dict):
        raise AnalysisError("AI analysis returned a malformed biomarker", details={"index": index})
    name = _opt_str(item.get("name"))
    if not name:
        raise AnalysisError("AI analysis returned a biomarker without a name", details={"index": index})

    value = _opt_str(item.get("value")) or ""
    unit = _opt_str(item.get("unit")) or ""
    if not unit:
        # legacy replies put the unit inside value: "5.8 ммоль/л"
        match = _VALUE_WITH_UNIT.match(value)
        if match:
            value, unit = match.group("value"), match.group("unit").strip()

    status = (_opt_str(item.get("status")) or "").lower()
    if status not in RESULT_STATUSES:
        status = classify(name, value, unit)

    category = (_opt_str(item.get("category")) or "").lower() or None
    if category not in CATEGORIES:
        category = None

    return AnalysisMarker(
        name=name,
        value=value,
        unit=unit,
        status=status,
        category=category,
        reference_range=_opt_str(item.get("referenceRange") or item.get("reference_range")),
        recommendation=_opt_str(item.get("recommendation")),
        education=_opt_str(item.get("education")) or _education_for(name),
    )


def parse_analysis(content: str) -> AnalysisResult:
    """Validate a raw completion into an ``AnalysisResult`` or raise ``AnalysisError``."""
    body = strip_code_fence(content)
    try:
        data = json.loads(body)
    except ValueError as exc:
        raise AnalysisError("AI analysis returned non-JSON output") from exc
    if not isinstance(data, dict):
        raise AnalysisError("AI analysis returned an unexpected JSON shape")
    if not any(key in data for key in ("biomarkers", "markers", "summary")):
        raise AnalysisError("AI analysis returned an unexpected JSON shape", details={"keys": sorted(data)})

    raw_markers = data.get("biomarkers")
    if raw_markers is None:
        raw_markers = data.get("markers") or []
    if not isinstance(raw_markers, list):
        raise AnalysisError("AI analysis biomarkers must be a list")

    summary = data.get("summary") or ""
    if not isinstance(summary, str):
        raise AnalysisError("AI analysis summary must be text")

    recs = data.get("recommendations") or []
    if not isinstance(recs, list):
        raise AnalysisError("AI analysis recommendations must be a list")

    return AnalysisResult(
        biomarkers=[_parse_marker(item, i) for i, item in enumerate(raw_markers)],
        summary=summary.strip(),
        recommendations=[str(r).strip() for r in recs if str(r).strip()] or list(DEFAULT_RECOMMENDATIONS),
    )


async def analyze(text: str, *, transport: Optional[httpx.AsyncBaseTransport] = None) -> AnalysisResult:
    if not (text or "").strip():
        raise AnalysisError("Nothing to analyze")
    messages = [
        {"role": "system", "content": ANALYSIS_SYSTEM_PROMPT},
        {"role": "user", "content": text},
    ]
    try:
        content = await chat_completion(
            messages,
            model=ANALYSIS_MODEL,
            base_url=ANALYSIS_API_BASE,
            api_key=ANALYSIS_API_KEY,
            timeout_s=AI_TIMEOUT_SECONDS,
            max_tokens=ANALYSIS_MAX_TOKENS,
            temperature=ANALYSIS_TEMPERATURE,
            response_format={"type": "json_object"},
            transport=transport,
        )
    except ProviderError as exc:
        raise AnalysisError(exc.message, details=exc.details) from exc

    result = parse_analysis(content)
    logger.info({
        "function": "analyze_results",
        "model": ANALYSIS_MODEL,
        "biomarkers": len(result.biomarkers),
        "recommendations": len(result.recommendations),
    })
    return result


__all__ = ["AnalysisMarker", "AnalysisResult", "analyze", "parse_analysis", "strip_code_fence"]
