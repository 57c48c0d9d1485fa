import logging
import textwrap
from dataclasses import dataclass
from typing import List, Optional

import pytest

from engine import SearchEngine


@dataclass
class RunResult:
    code: int
    engine: SearchEngine
    records: List[logging.LogRecord]

    @property
    def logs(self) -> List[str]:
        """INFO messages, i.e. the output of ``log`` statements."""
        return [r.getMessage() for r in self.records if r.levelno == logging.INFO]

    @property
    def errors(self) -> List[str]:
        return [r.getMessage() for r in self.records if r.levelno >= logging.ERROR]

    def lines(self, buffer: str = "_main") -> List[str]:
        return self.engine.buffer_lines(buffer)


@pytest.fixture
def make_engine(caplog):
    caplog.set_level(logging.DEBUG, logger="sesknife")
    engines: List[SearchEngine] = []

    def factory(**kwargs) -> SearchEngine:
        engine = SearchEngine(logging.getLogger("sesknife"), **kwargs)
        engines.append(engine)
        return engine

    yield factory
    for engine in engines:
        engine.close()


@pytest.fixture
def run_script(make_engine, tmp_path, caplog):
    """Write ``source`` to a script file, run it once and collect the log.

    ``data`` lines are written to a file that is loaded into ``~_main``.
    """

    def runner(
        source: str,
        *,
        data: Optional[List[str]] = None,
        variables: Optional[dict] = None,
        engine: Optional[SearchEngine] = None,
        **kwargs,
    ) -> RunResult:
        engine = engine or make_engine(**kwargs)
        script_path = tmp_path / "main.ses"
        script_path.write_text(textwrap.dedent(source).lstrip("\n"), encoding="utf-8")
        engine.load_script("main", str(script_path))
        for name, value in (variables or {}).items():
            engine.define_variable(name, value)
        input_file = None
        if data is not None:
            data_path = tmp_path / "data.txt"
            data_path.write_text("".join(line + "\n" for line in data), encoding="utf-8")
            input_file = str(data_path)
        before = len(caplog.records)
        code = engine.test_and_run("main", input_file=input_file)
        records = [r for r in caplog.records[before:] if r.name == "sesknife"]
        return RunResult(code=code, engine=engine, records=records)

    return runner


@pytest.fixture
def four_lines() -> List[str]:
    return ["Line1", "Line2", "Line3", "Line4"]
