"""Smoke tests for package wiring.

These catch missing imports, missing slot declarations, and broken
__post_init__ wiring that unit tests on single modules miss.
"""

import importlib
import weakref

import pytest

MODULES = [
    "brokerstream.engine",
    "brokerstream.engine.clock",
    "brokerstream.engine.config",
    "brokerstream.engine.defaults",
    "brokerstream.engine.errors",
    "brokerstream.engine.pool",
    "brokerstream.engine.primitives",
    "brokerstream.engine.protocols",
    "brokerstream.engine.registry",
    "brokerstream.engine.session",
    "brokerstream.engine.transport",
    "brokerstream.engine.validate",
    "brokerstream.consumers",
    "brokerstream.consumers.quotes",
    "brokerstream.consumers.runner",
    "brokerstream.consumers.ticker",
]


class TestImports:
    @pytest.mark.parametrize("name", MODULES)
    def test_module_imports(self, name):
        assert importlib.import_module(name)

    def test_engine_reexports(self):
        import brokerstream.engine as engine

        for name in engine.__all__:
            assert hasattr(engine, name), name


class TestConstruction:
    """Everything a UI would build on startup constructs without a network."""

    def test_session_builds_without_transport(self):
        from brokerstream.engine import Session

        s = Session("tok")
        assert s.transport is None
        assert s.registry is not None

    def test_transport_satisfies_protocol(self):
        from brokerstream.engine.config import StreamConfig
        from brokerstream.engine.protocols import TransportLike
        from brokerstream.engine.transport import Transport

        assert isinstance(Transport.fromConfig(StreamConfig()), TransportLike)

    def test_consumers_are_weak_referenceable(self):
        # session events hold bound-method handlers weakly
        from brokerstream.consumers import PriceTicker, ProposalDesk, StrategyRunner
        from brokerstream.engine import Session

        s = Session("tok")
        for consumer in (PriceTicker(s), ProposalDesk(s), StrategyRunner(s)):
            assert weakref.ref(consumer)() is consumer

        assert weakref.ref(s)() is s

    def test_all_consumers_share_one_session(self, transport):
        from brokerstream.consumers import PriceTicker, ProposalDesk, StrategyRunner
        from brokerstream.engine import Session

        s = Session("tok", transport=transport)
        ticker, desk, runner = PriceTicker(s), ProposalDesk(s), StrategyRunner(s)

        assert ticker.session is desk.session is runner.session
