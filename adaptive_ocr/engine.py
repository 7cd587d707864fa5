"""
External recognition engine contract.

The engine is a black box: image in, text out, optionally with word boxes.
Engines are resolved by ``module:Class`` path so that worker processes can
construct them without anything being pickled but the path and options.
"""

import importlib
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

import numpy as np
import pytesseract
import structlog
from PIL import Image

from .types import OCREngineError, OCRTimeoutError, WordBox

logger = structlog.get_logger(__name__)


class RecognitionEngine(ABC):
    """Text recognition engine interface."""

    def __init__(self, **options: Any):
        self.options = options

    @abstractmethod
    def recognize_text(self, image: np.ndarray, timeout: float) -> str:
        """Full-page text."""

    @abstractmethod
    def recognize_words(self, image: np.ndarray, timeout: float) -> List[WordBox]:
        """Words with pixel bounding boxes, in reading order."""

    def version(self) -> str:
        return type(self).__name__


class TesseractEngine(RecognitionEngine):
    """Tesseract via pytesseract. Each call runs one tesseract subprocess."""

    def __init__(
        self,
        lang: str = "eng",
        oem: int = 3,
        psm: int = 6,
        dpi: Optional[int] = None,
        tesseract_cmd: Optional[str] = None,
        **options: Any,
    ):
        super().__init__(lang=lang, oem=oem, psm=psm, dpi=dpi, **options)
        self.lang = lang
        self.oem = oem
        self.psm = psm
        self.dpi = dpi
        if tesseract_cmd:
            pytesseract.pytesseract.tesseract_cmd = tesseract_cmd
        self.logger = logger.bind(component="TesseractEngine")

    def _build_config(self) -> str:
        """Build Tesseract configuration string."""
        tesseract_options = [f"--oem {self.oem}", f"--psm {self.psm}"]
        if self.dpi:
            tesseract_options.append(f"--dpi {self.dpi}")
        return " ".join(tesseract_options)

    def recognize_text(self, image: np.ndarray, timeout: float) -> str:
        try:
            return pytesseract.image_to_string(
                Image.fromarray(image),
                lang=self.lang,
                config=self._build_config(),
                timeout=timeout,
            )
        except Exception as e:
            raise self._translate_error(e)

    def recognize_words(self, image: np.ndarray, timeout: float) -> List[WordBox]:
        try:
            data = pytesseract.image_to_data(
                Image.fromarray(image),
                lang=self.lang,
                config=self._build_config(),
                output_type=pytesseract.Output.DICT,
                timeout=timeout,
            )
        except Exception as e:
            raise self._translate_error(e)
        return self._organize_words(data)

    def _organize_words(self, data: Dict[str, List]) -> List[WordBox]:
        words = []
        for i in range(len(data["text"])):
            # Level 5 is word level
            if int(data["level"][i]) != 5:
                continue
            text = str(data["text"][i]).strip()
            if not text:
                continue
            words.append(
                WordBox(
                    text=text,
                    x=int(data["left"][i]),
                    y=int(data["top"][i]),
                    w=int(data["width"][i]),
                    h=int(data["height"][i]),
                    confidence=float(data["conf"][i]),
                    line_key=(
                        int(data["block_num"][i]),
                        int(data["par_num"][i]),
                        int(data["line_num"][i]),
                    ),
                )
            )
        return words

    def _translate_error(self, error: Exception) -> Exception:
        # pytesseract signals its own timeout with a plain RuntimeError
        if isinstance(error, RuntimeError) and "timeout" in str(error).lower():
            return OCRTimeoutError(f"Tesseract timed out: {error}")
        return OCREngineError(f"Tesseract failed: {error}")

    def version(self) -> str:
        try:
            return f"Tesseract {pytesseract.get_tesseract_version()}"
        except Exception:
            return "Tesseract unknown"


def load_engine(path: str, options: Optional[Dict[str, Any]] = None) -> RecognitionEngine:
    """
    Instantiate an engine from a ``module:Class`` path.

    Raises:
        OCREngineError: if the path cannot be imported or is not an engine
    """
    module_name, _, class_name = path.partition(":")
    try:
        module = importlib.import_module(module_name)
        engine_cls = getattr(module, class_name)
    except (ImportError, AttributeError) as e:
        raise OCREngineError(f"Cannot load engine '{path}': {e}") from e

    if not (isinstance(engine_cls, type) and issubclass(engine_cls, RecognitionEngine)):
        raise OCREngineError(f"'{path}' is not a RecognitionEngine")
    return engine_cls(**(options or {}))
