"""Tests for brokerstream.consumers.runner: StrategyRunner."""
import pytest

from brokerstream.consumers.runner import RunnerConfig, StrategyRunner, coinflip
from brokerstream.consumers.ticker import PriceTicker
from brokerstream.engine.primitives import Direction
from tests.conftest import buyFrame, contractFrame, errorReply, proposalFrame, tickFrame


def make_runner(session, direction=Direction.CALL, **config):
    cfg = RunnerConfig(**{"asset": "R_100", "stake": 1.0, **config})
    return StrategyRunner(session, chooser=lambda: direction, config=cfg)


def trade_once(runner, transport, contractId=555, status="won", profit=0.95):
    """Drive one trade from quote to close."""
    quoteReqId = runner.step()
    transport.deliver(proposalFrame(quoteReqId, f"q{quoteReqId}", ask=1.0))
    transport.deliver(buyFrame(runner.logs[0].buyReqId, contractId=contractId))
    transport.deliver(contractFrame(contractId, status, profit))
    return runner.logs[0]


class TestConfig:
    def test_defaults(self):
        cfg = RunnerConfig()
        assert cfg.maxTrades == 50
        assert cfg.stopLossPct == 10.0
        assert cfg.takeProfitPct == 20.0
        assert cfg.interval == 60.0

    def test_coinflip(self):
        assert coinflip() in (Direction.CALL, Direction.PUT)


class TestLimits:
    @pytest.mark.asyncio
    async def test_no_limit_at_start(self, authed):
        assert make_runner(authed).limitReached() is None

    @pytest.mark.asyncio
    async def test_trade_limit(self, authed):
        runner = make_runner(authed, maxTrades=2)
        runner.stats.totalTrades = 2
        assert runner.limitReached() == "Daily trade limit reached"

    @pytest.mark.asyncio
    async def test_stop_loss(self, authed):
        # balance 10,000 at 10% -> stop at -1,000
        runner = make_runner(authed)
        runner.stats.totalProfit = -999.0
        assert runner.limitReached() is None

        runner.stats.totalProfit = -1000.0
        assert runner.limitReached() == "Stop loss triggered"

    @pytest.mark.asyncio
    async def test_take_profit(self, authed):
        runner = make_runner(authed)
        runner.stats.totalProfit = 2000.0
        assert runner.limitReached() == "Take profit reached"

    @pytest.mark.asyncio
    async def test_flat_profit_never_triggers(self, authed):
        runner = make_runner(authed, stopLossPct=0, takeProfitPct=0)
        assert runner.limitReached() is None


class TestTrading:
    @pytest.mark.asyncio
    async def test_step_requests_one_shot_quote(self, authed, transport):
        runner = make_runner(authed, direction=Direction.PUT, duration=2)
        runner.attach()
        transport.sent.clear()

        reqId = runner.step()

        frame = transport.sent[-1]
        assert frame["req_id"] == reqId
        assert frame["contract_type"] == "PUT"
        assert frame["duration"] == 2
        assert "subscribe" not in frame
        assert runner.stats.totalTrades == 1
        assert runner.logs[0].result == "pending"

    @pytest.mark.asyncio
    async def test_winning_trade(self, authed, transport):
        runner = make_runner(authed)
        runner.attach()

        log = trade_once(runner, transport, status="won", profit=0.95)

        assert {"buy": "q1", "price": 1.0, "subscribe": 1, "req_id": log.buyReqId} in transport.sent
        assert log.contractId == 555
        assert log.result == "win"
        assert log.profit == 0.95
        assert runner.stats.wins == 1
        assert runner.stats.totalProfit == pytest.approx(0.95)
        assert runner.stats.winRate == 1.0

    @pytest.mark.asyncio
    async def test_losing_trade(self, authed, transport):
        runner = make_runner(authed)
        runner.attach()

        log = trade_once(runner, transport, status="lost", profit=-1.0)

        assert log.result == "loss"
        assert runner.stats.losses == 1
        assert runner.stats.totalProfit == pytest.approx(-1.0)

    @pytest.mark.asyncio
    async def test_open_updates_keep_trade_pending(self, authed, transport):
        runner = make_runner(authed)
        runner.attach()

        log = trade_once(runner, transport, status="open", profit=0.3)

        assert log.result == "pending"
        assert log.profit == 0.3
        assert runner.stats.totalProfit == 0.0

    @pytest.mark.asyncio
    async def test_rejected_quote_marks_failed(self, authed, transport):
        runner = make_runner(authed)
        runner.attach()

        reqId = runner.step()
        transport.deliver(errorReply("proposal", "MarketIsClosed", "This market is presently closed.", reqId=reqId))

        assert runner.logs[0].result == "failed"
        assert runner.logs[0].reason == "This market is presently closed."

    @pytest.mark.asyncio
    async def test_rejected_buy_marks_failed(self, authed, transport):
        runner = make_runner(authed)
        runner.attach()

        reqId = runner.step()
        transport.deliver(proposalFrame(reqId, "q1"))
        buyReqId = runner.logs[0].buyReqId
        transport.deliver(errorReply("buy", "InsufficientBalance", "Insufficient balance", reqId=buyReqId))

        assert runner.logs[0].result == "failed"

    @pytest.mark.asyncio
    async def test_connection_drop_fails_unanswered_quote(self, authed, transport):
        runner = make_runner(authed)
        runner.attach()

        runner.step()
        transport.drop()

        assert runner.logs[0].result == "failed"
        assert "Connection lost" in runner.logs[0].reason
        assert runner._byProposal == {}

    @pytest.mark.asyncio
    async def test_detach_keeps_stream_shared_with_ticker(self, authed, transport):
        ticker = PriceTicker(authed, "R_100")
        ticker.start()
        runner = make_runner(authed)
        runner.attach()
        transport.sent.clear()

        runner.detach()
        transport.deliver(tickFrame("R_100", 812.5))

        assert transport.sent == []
        assert ticker.current == 812.5

    @pytest.mark.asyncio
    async def test_step_skipped_when_not_authorized(self, session):
        runner = make_runner(session)

        assert runner.step() is None
        assert runner.stats.totalTrades == 0
        assert len(runner.logs) == 0

    @pytest.mark.asyncio
    async def test_tracks_last_price(self, authed, transport):
        runner = make_runner(authed)
        runner.attach()

        transport.deliver(tickFrame("R_100", 812.5))
        assert runner.lastPrice == 812.5

    @pytest.mark.asyncio
    async def test_detach(self, authed, transport):
        runner = make_runner(authed)
        runner.attach()
        runner.detach()

        transport.deliver(tickFrame("R_100", 812.5))
        assert runner.lastPrice is None


class TestRun:
    @pytest.mark.asyncio
    async def test_runs_until_trade_limit(self, authed, clock):
        runner = make_runner(authed, maxTrades=3, interval=60.0)

        await runner.run()

        assert not runner.running
        assert runner.stopReason == "Daily trade limit reached"
        assert runner.stats.totalTrades == 3
        assert clock.sleeps == [60.0, 60.0, 60.0]

    @pytest.mark.asyncio
    async def test_halt_stops_loop(self, authed, clock):
        runner = make_runner(authed, maxTrades=100)
        original = clock.sleep

        async def sleepThenHalt(delay):
            await original(delay)
            runner.halt("Stopped by user")

        clock.sleep = sleepThenHalt

        await runner.run()

        assert runner.stats.totalTrades == 1
        assert runner.stopReason == "Stopped by user"

    @pytest.mark.asyncio
    async def test_log_is_bounded(self, authed, clock):
        runner = make_runner(authed, maxTrades=150, interval=1.0)

        await runner.run()

        assert runner.stats.totalTrades == 150
        assert len(runner.logs) == 100
