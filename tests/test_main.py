import json
from pathlib import Path

import pytest
from conftest import SOURCE

from copybot.core.models import SideFilter
from copybot.main import apply_sources, load_sources_file
from copybot.services.engine import ReplicationEngine
from copybot.services.event_source import EventSource


def _write(path, sources):
    path.write_text(json.dumps({"sources": sources}))
    return str(path)


class TestLoadSourcesFile:

    def test_missing_file_returns_none(self, tmp_path):
        assert load_sources_file(str(tmp_path / "nope.json")) is None

    def test_parses_sources(self, tmp_path):
        path = _write(tmp_path / "sources.json", [
            {"address": SOURCE.upper().replace("0X", "0x"), "label": "Whale",
             "config": {"trade_side_filter": "buy_only", "fixed_trade_size": 10}},
        ])
        (source,) = load_sources_file(path)
        assert source.address == SOURCE
        assert source.active
        assert source.config.trade_side_filter == SideFilter.BUY_ONLY
        assert source.config.fixed_trade_size == 10

    def test_invalid_config_raises(self, tmp_path):
        path = _write(tmp_path / "sources.json", [{"address": SOURCE, "config": {"fixed_trade_size": -1}}])
        with pytest.raises(ValueError):
            load_sources_file(path)

    def test_shipped_example_loads(self):
        sources = load_sources_file(str(Path(__file__).resolve().parents[1] / "copybot" / "config" / "sources.json"))
        assert sources and not sources[0].active

    def test_inverted_bounds_raise(self, tmp_path):
        path = _write(tmp_path / "sources.json", [{"address": SOURCE, "config": {"price_limits_min": 0.9, "price_limits_max": 0.1}}])
        with pytest.raises(ValueError):
            load_sources_file(path)


class TestApplySources:

    @pytest.mark.asyncio
    async def test_engine_and_feeds_share_sources(self, exchange, storage, no_sleep, make_source):
        event_source = EventSource(exchange, sleep=no_sleep)
        engine = ReplicationEngine(exchange, storage, resolve=event_source.resolver.resolve, sleep=no_sleep)
        engine.attach(event_source)

        await apply_sources([make_source()], engine, event_source)

        assert set(engine.sources) == {SOURCE}
        assert set(event_source.poll.sources) == {SOURCE}
        assert SOURCE in storage.sources
