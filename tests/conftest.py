import sys

import pytest
from fastapi.testclient import TestClient

from deobf_service import config
from deobf_service.api.main import create_app
from deobf_service.ledger import TokenLedger
from deobf_service.storage import MemoryStorage
from deobf_service.transformer import ExternalTransformer

# Stands in for the deobfuscator: same argv contract, behaviour chosen by
# markers in the input file.
FAKE_TOOL = r'''
import sys
import time
from pathlib import Path

args = sys.argv[1:]
if args[:1] != ["-dev"]:
    print("missing -dev", file=sys.stderr)
    sys.exit(64)
src = Path(args[args.index("-i") + 1]).read_text()
out = Path(args[args.index("-o") + 1])
if "FAIL" in src:
    print("unsupported obfuscator", file=sys.stderr)
    sys.exit(3)
if "SLEEP" in src:
    print("unpacking stage 1", file=sys.stderr, flush=True)
    time.sleep(30)
if "NOOUT" in src:
    sys.exit(0)
out.write_text("-- deobfuscated\n" + src)
print("done")
'''

START_MS = 1_700_000_000_000
DAY_MS = 24 * 60 * 60 * 1000


class FakeClock:
    def __init__(self, now: int = START_MS) -> None:
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


@pytest.fixture(autouse=True)
def _isolated_env(tmp_path, monkeypatch):
    monkeypatch.setattr(config.settings, "ledger_backend", "memory")
    monkeypatch.setattr(config.settings, "database_path", str(tmp_path / "ledger.db"))
    monkeypatch.setattr(config.settings, "work_dir", str(tmp_path / "work"))
    monkeypatch.setattr(config.settings, "admin_api_token", "test-admin-token")
    monkeypatch.setattr(config.settings, "transform_timeout_sec", 10)
    monkeypatch.setattr(config.settings, "max_file_mb", 25)
    yield


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def ledger(clock) -> TokenLedger:
    return TokenLedger(MemoryStorage(), clock=clock)


@pytest.fixture
def work_dir(tmp_path):
    return tmp_path / "work"


@pytest.fixture
def fake_tool(tmp_path) -> ExternalTransformer:
    script = tmp_path / "fake_tool.py"
    script.write_text(FAKE_TOOL)
    return ExternalTransformer(executable=str(script), runtime=sys.executable, flags=["-dev"], timeout_sec=10)


@pytest.fixture
def client(ledger, fake_tool) -> TestClient:
    return TestClient(create_app(ledger=ledger, transformer=fake_tool))
