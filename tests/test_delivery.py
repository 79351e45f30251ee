import asyncio
from pathlib import Path

import pytest

from conftest import FakeChatClient
from feishubridge.bus.events import AgentReply
from feishubridge.delivery.scheduler import DeliveryScheduler
from feishubridge.errors import AgentTimeout
from feishubridge.utils.files import BridgePaths


@pytest.fixture
def paths(tmp_path: Path) -> BridgePaths:
    root = tmp_path.resolve()
    p = BridgePaths(root, root / "outputs", root / "downloads")
    p.outputs_dir.mkdir()
    p.download_dir.mkdir()
    return p


def _reply_after(delay: float, reply: AgentReply):
    async def invoke() -> AgentReply:
        await asyncio.sleep(delay)
        return reply

    return invoke


async def _run(scheduler: DeliveryScheduler, invoke, job_id: str = "j1", is_group: bool = False):
    delivery = scheduler.open("oc_1", job_id, is_group)
    await scheduler.run(delivery, invoke)
    return delivery


@pytest.mark.asyncio
async def test_fast_reply_sends_no_hint(client: FakeChatClient, paths: BridgePaths) -> None:
    scheduler = DeliveryScheduler(client, paths, hint_delay=0.2, ping_interval=0)

    delivery = await _run(scheduler, _reply_after(0, AgentReply(text="pong")))
    await asyncio.sleep(0.3)

    assert client.texts == ["pong"]
    assert not delivery.hint_sent
    assert not delivery.timers_active


@pytest.mark.asyncio
async def test_slow_reply_gets_one_hint_and_prefix(client: FakeChatClient, paths: BridgePaths) -> None:
    scheduler = DeliveryScheduler(client, paths, hint_delay=0.05, ping_interval=0)

    await _run(scheduler, _reply_after(0.25, AgentReply(text="done!")))

    assert client.texts == ["后台处理… 任务ID：j1", "已完成（任务ID：j1）：\ndone!"]


@pytest.mark.asyncio
async def test_hint_disabled(client: FakeChatClient, paths: BridgePaths) -> None:
    scheduler = DeliveryScheduler(client, paths, hint_delay=0.05, ping_interval=0, send_hint=False)

    await _run(scheduler, _reply_after(0.15, AgentReply(text="done!")))

    assert client.texts == ["done!"]


@pytest.mark.asyncio
async def test_ping_suppresses_hint(client: FakeChatClient, paths: BridgePaths) -> None:
    scheduler = DeliveryScheduler(client, paths, hint_delay=0.2, ping_interval=0.08)

    delivery = await _run(scheduler, _reply_after(0.3, AgentReply(text="result")))
    await asyncio.sleep(0.1)

    pings = [t for t in client.texts if t == "任务 j1 仍在处理中…"]
    assert pings
    assert "后台处理… 任务ID：j1" not in client.texts
    assert "result" in client.texts
    assert not delivery.hint_sent
    assert not delivery.timers_active


@pytest.mark.asyncio
async def test_failure_is_reported(client: FakeChatClient, paths: BridgePaths) -> None:
    scheduler = DeliveryScheduler(client, paths, hint_delay=10, ping_interval=0)

    async def invoke() -> AgentReply:
        raise AgentTimeout("openclaw agent timeout after 5s")

    delivery = await _run(scheduler, invoke)

    assert client.texts == ["任务 j1 失败：openclaw agent timeout after 5s"]
    assert not delivery.timers_active


@pytest.mark.asyncio
async def test_root_level_attachment_moves_to_outputs(client: FakeChatClient, paths: BridgePaths) -> None:
    (paths.workspace_root / "report.pdf").write_bytes(b"%PDF-1.4")
    (paths.outputs_dir / "chart.png").write_bytes(b"\x89PNG")
    reply = AgentReply(text="Here you go\nFILE: report.pdf", media_paths=["report.pdf", "outputs/chart.png"])

    scheduler = DeliveryScheduler(client, paths, hint_delay=10, ping_interval=0)

    await _run(scheduler, _reply_after(0, reply))

    assert not (paths.workspace_root / "report.pdf").exists()
    assert (paths.outputs_dir / "report.pdf").exists()
    assert ("file", "oc_1", "file_report.pdf") in client.sent
    assert ("image", "oc_1", "img_chart.png") in client.sent
    assert client.sent[-1] == ("text", "oc_1", "Here you go")


@pytest.mark.asyncio
async def test_mentioned_pdf_is_sent_without_file_line(client: FakeChatClient, paths: BridgePaths) -> None:
    (paths.outputs_dir / "summary.pdf").write_bytes(b"%PDF-1.4")
    scheduler = DeliveryScheduler(client, paths, hint_delay=10, ping_interval=0)

    await _run(scheduler, _reply_after(0, AgentReply(text="I saved it as `summary.pdf`.")))

    assert ("file", "oc_1", "file_summary.pdf") in client.sent


@pytest.mark.asyncio
async def test_missing_attachment_sends_notice(client: FakeChatClient, paths: BridgePaths) -> None:
    scheduler = DeliveryScheduler(client, paths, hint_delay=10, ping_interval=0)

    await _run(
        scheduler,
        _reply_after(0, AgentReply(text="see file", media_paths=["nowhere/missing.docx"])),
        is_group=True,
    )

    notice = client.texts[0]
    assert "发送到飞书群聊失败" in notice
    assert "文件名：missing.docx" in notice
    assert client.texts[-1] == "see file"


@pytest.mark.asyncio
async def test_upload_error_sends_notice(client: FakeChatClient, paths: BridgePaths) -> None:
    (paths.outputs_dir / "a.xlsx").write_bytes(b"xx")
    client.fail_uploads = True
    scheduler = DeliveryScheduler(client, paths, hint_delay=10, ping_interval=0)

    await _run(scheduler, _reply_after(0, AgentReply(text="", media_paths=["outputs/a.xlsx"])))

    assert len(client.texts) == 1
    assert "错误：upload rejected" in client.texts[0]


@pytest.mark.asyncio
async def test_remote_media_is_skipped(client: FakeChatClient, paths: BridgePaths) -> None:
    scheduler = DeliveryScheduler(client, paths, hint_delay=10, ping_interval=0)

    await _run(scheduler, _reply_after(0, AgentReply(text="link", media_paths=["https://example.com/x.png"])))

    assert client.sent == [("text", "oc_1", "link")]


@pytest.mark.asyncio
async def test_tool_traces_never_reach_chat(client: FakeChatClient, paths: BridgePaths) -> None:
    scheduler = DeliveryScheduler(client, paths, hint_delay=10, ping_interval=0)

    await _run(scheduler, _reply_after(0, AgentReply(text="Exec: rm -rf /tmp/x\nAll clean.")))

    assert client.texts == ["All clean."]
