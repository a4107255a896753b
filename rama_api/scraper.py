from __future__ import annotations

import re
from typing import Any, Callable, Dict, List, Optional

import structlog
from bs4 import BeautifulSoup
from playwright.async_api import Error as PlaywrightError  # type: ignore
from playwright.async_api import TimeoutError as PlaywrightTimeoutError  # type: ignore

from typing import TYPE_CHECKING
if TYPE_CHECKING:
    from playwright.async_api import Page  # type: ignore

from rama_api.browser_pool import BrowserPool
from rama_api.config import DEFAULT_CONSULTA_URL
from rama_api.exceptions import ExtractionError, InvalidRadicado, NavigationTimeout, UpstreamUnavailable


logger = structlog.get_logger(__name__)


# -----------------------------
# Site constants
# -----------------------------

RADICADO_LENGTH: int = 23

_NON_DIGITS = re.compile(r"\D")

INPUT_SELECTOR = "input[placeholder='Ingrese los 23 dígitos del número de Radicación']"
SUBMIT_SELECTOR = "button:has-text('Consultar')"
NO_RESULTS_TEXT = "La consulta no generó resultados"
FICHA_HEADER = "Fecha de Radicación"

SUJETO_TIPOS = ("Demandante", "Demandado")
ACTUACION_COLUMNS = (
    "Fecha de Actuación",
    "Actuación",
    "Anotación",
    "Fecha inicia Término",
    "Fecha finaliza Término",
    "Fecha de Registro",
)


# -----------------------------
# Input validation
# -----------------------------

def normalize_radicado(raw: Optional[str]) -> str:
    """Keep only digits; a radicación number is exactly 23 of them."""
    if not raw:
        raise InvalidRadicado("Parámetro numero_radicacion requerido")
    digits = _NON_DIGITS.sub("", raw)
    if len(digits) != RADICADO_LENGTH:
        raise InvalidRadicado(
            f"El número debe tener {RADICADO_LENGTH} dígitos. Recibido: {len(digits)}"
        )
    return digits


# -----------------------------
# HTML extraction
# -----------------------------

def _cell_text(tag) -> str:
    return tag.get_text(" ", strip=True) if tag is not None else ""


def parse_ficha(html: str) -> Dict[str, str]:
    """Label/value pairs of the case summary table (the one with "Fecha de Radicación")."""
    soup = BeautifulSoup(html or "", "lxml")
    ficha: Dict[str, str] = {}
    for tbody in soup.find_all("tbody"):
        if not any(FICHA_HEADER in th.get_text() for th in tbody.find_all("th")):
            continue
        for row in tbody.find_all("tr"):
            label = _cell_text(row.find("th"))
            value = _cell_text(row.find("td"))
            if label and value:
                ficha[label.replace(":", "", 1).strip()] = value
        break
    return ficha


def parse_sujetos(html: str) -> List[Dict[str, str]]:
    soup = BeautifulSoup(html or "", "lxml")
    sujetos: List[Dict[str, str]] = []
    for row in soup.select("table tbody tr"):
        cells = row.find_all("td")
        if len(cells) != 2:
            continue
        tipo, nombre = _cell_text(cells[0]), _cell_text(cells[1])
        if tipo in SUJETO_TIPOS and nombre:
            sujetos.append({"tipo": tipo, "nombre": nombre})
    return sujetos


def parse_actuaciones(html: str) -> List[Dict[str, str]]:
    soup = BeautifulSoup(html or "", "lxml")
    actuaciones: List[Dict[str, str]] = []
    for row in soup.select("table tbody tr"):
        cells = row.find_all("td")
        if len(cells) < len(ACTUACION_COLUMNS):
            continue
        actuaciones.append(
            {col: _cell_text(cell) for col, cell in zip(ACTUACION_COLUMNS, cells)}
        )
    return actuaciones


def not_found_result(radicado: str) -> Dict[str, Any]:
    return {
        "success": False,
        "estado": "NO_ENCONTRADO",
        "mensaje": "La consulta no generó resultados en la Rama Judicial",
        "numero_radicacion": radicado,
    }


# -----------------------------
# RamaJudicialScraper
# -----------------------------

class RamaJudicialScraper:
    """
    Task executor: looks up one radicación number on the Rama Judicial site.

    Borrows exactly one page from the shared BrowserPool per call; the pool's
    session() closes it on every exit path, including cancellation by the
    scheduler's timeout.
    """

    def __init__(
        self,
        pool: BrowserPool,
        *,
        consulta_url: str = DEFAULT_CONSULTA_URL,
        navigation_timeout_ms: int = 30_000,
        result_wait_timeout_ms: int = 10_000,
        tab_wait_timeout_ms: int = 5_000,
    ) -> None:
        self.pool = pool
        self.consulta_url = consulta_url
        self.navigation_timeout_ms = navigation_timeout_ms
        self.result_wait_timeout_ms = result_wait_timeout_ms
        self.tab_wait_timeout_ms = tab_wait_timeout_ms

    async def __call__(self, request_key: str) -> Dict[str, Any]:
        return await self.execute(request_key)

    async def execute(self, request_key: str) -> Dict[str, Any]:
        radicado = normalize_radicado(request_key)

        async with self.pool.session() as page:
            await self._search(page, radicado)

            if await page.locator(f"text={NO_RESULTS_TEXT}").count() > 0:
                logger.info("radicado_not_found", radicado=radicado)
                return not_found_result(radicado)

            await self._open_result(page, radicado)
            proceso = parse_ficha(await page.content())
            sujetos = await self._read_tab(page, "Sujetos Procesales", parse_sujetos)
            actuaciones = await self._read_tab(page, "Actuaciones", parse_actuaciones)

        logger.info(
            "radicado_scraped",
            radicado=radicado,
            sujetos=len(sujetos),
            actuaciones=len(actuaciones),
        )
        return {
            "success": True,
            "numero_radicacion": radicado,
            "proceso": proceso,
            "sujetos_procesales": sujetos,
            "actuaciones": actuaciones,
            "total_actuaciones": len(actuaciones),
            "ultima_actuacion": actuaciones[0] if actuaciones else None,
        }

    async def _search(self, page: "Page", radicado: str) -> None:
        try:
            await page.goto(
                self.consulta_url,
                wait_until="domcontentloaded",
                timeout=self.navigation_timeout_ms,
            )
        except PlaywrightTimeoutError as exc:
            raise NavigationTimeout(f"Tiempo agotado cargando la Rama Judicial: {exc}") from exc
        except PlaywrightError as exc:
            raise UpstreamUnavailable(f"No se pudo abrir la Rama Judicial: {exc}") from exc

        try:
            await page.fill(INPUT_SELECTOR, radicado)
            await page.click(SUBMIT_SELECTOR)
            # Either the number shows up as a result link or the "no results" banner does
            answer = page.locator(f"text={radicado}").or_(page.locator(f"text={NO_RESULTS_TEXT}"))
            await answer.first.wait_for(timeout=self.result_wait_timeout_ms)
        except PlaywrightTimeoutError as exc:
            raise NavigationTimeout(f"La Rama Judicial no respondió a la consulta: {exc}") from exc
        except PlaywrightError as exc:
            raise UpstreamUnavailable(f"Error enviando la consulta: {exc}") from exc

    async def _open_result(self, page: "Page", radicado: str) -> None:
        try:
            await page.click(f"text={radicado}")
            await page.wait_for_selector("tbody", timeout=self.result_wait_timeout_ms)
        except PlaywrightError as exc:
            raise ExtractionError(f"No se pudo abrir el detalle del proceso: {exc}") from exc

    async def _read_tab(
        self,
        page: "Page",
        label: str,
        parser: Callable[[str], List[Dict[str, str]]],
    ) -> List[Dict[str, str]]:
        """A tab that fails to load yields an empty list; the rest of the result stands."""
        try:
            await page.click(f'div.v-tab:has-text("{label}")')
            await page.wait_for_selector("table tbody tr", timeout=self.tab_wait_timeout_ms)
            return parser(await page.content())
        except PlaywrightError as exc:
            logger.warning("tab_read_failed", tab=label, error=str(exc))
            return []
