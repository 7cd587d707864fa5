"""
Code that runs inside recognition worker processes.

Workers never emit trace events. Every call returns a RecognitionRecord that
carries the outcome, timing and worker pid so the orchestrating process can
emit the authoritative event.
"""

import os
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import numpy as np

from .engine import RecognitionEngine, load_engine
from .types import OCREngineError, OCRTimeoutError, WordBox

MODE_TEXT = "text"
MODE_WORDS = "words"

OUTCOME_OK = "ok"
OUTCOME_TIMEOUT = "timeout"
OUTCOME_ERROR = "error"

# One engine instance per worker process, keyed by path and options
_ENGINE_CACHE: Dict[Tuple[str, Tuple], RecognitionEngine] = {}


@dataclass
class RecognitionTask:
    image_id: str
    pass_name: str
    image: np.ndarray
    engine_path: str
    engine_options: Dict[str, Any] = field(default_factory=dict)
    timeout: float = 60.0
    mode: str = MODE_TEXT


@dataclass
class RecognitionRecord:
    image_id: str
    pass_name: str
    outcome: str
    text: str = ""
    words: List[WordBox] = field(default_factory=list)
    error_message: Optional[str] = None
    started: float = 0.0
    finished: float = 0.0
    worker_pid: int = 0

    @property
    def duration(self) -> float:
        return max(0.0, self.finished - self.started)

    @property
    def ok(self) -> bool:
        return self.outcome == OUTCOME_OK


def _get_engine(path: str, options: Dict[str, Any]) -> RecognitionEngine:
    key = (path, tuple(sorted((k, repr(v)) for k, v in options.items())))
    engine = _ENGINE_CACHE.get(key)
    if engine is None:
        engine = load_engine(path, options)
        _ENGINE_CACHE[key] = engine
    return engine


def run_recognition(task: RecognitionTask) -> RecognitionRecord:
    """Execute one recognition call. Engine failures are returned, not raised."""
    record = RecognitionRecord(
        image_id=task.image_id,
        pass_name=task.pass_name,
        outcome=OUTCOME_OK,
        worker_pid=os.getpid(),
        started=time.monotonic(),
    )
    try:
        engine = _get_engine(task.engine_path, task.engine_options)
        if task.mode == MODE_WORDS:
            record.words = engine.recognize_words(task.image, task.timeout)
        else:
            record.text = engine.recognize_text(task.image, task.timeout)
    except OCRTimeoutError as e:
        record.outcome = OUTCOME_TIMEOUT
        record.error_message = str(e)
    except OCREngineError as e:
        record.outcome = OUTCOME_ERROR
        record.error_message = str(e)
    except Exception as e:
        record.outcome = OUTCOME_ERROR
        record.error_message = f"{type(e).__name__}: {e}"
    finally:
        record.finished = time.monotonic()
    return record
