"""
CLI 命令：finish-os
审计、统计与数据导入导出入口
"""
import asyncio
import logging
import sys
from pathlib import Path
from typing import Optional

import click

# 添加项目根目录到 sys.path，以便导入 core 模块
project_root = Path(__file__).parent.parent
sys.path.append(str(project_root))

from core.exceptions import FinishOSError  # noqa: E402
from core.logger import setup_logging  # noqa: E402
from core.runtime import Runtime  # noqa: E402
from core.storage import JsonFileStore, export_to_file, import_from_file  # noqa: E402
from scheduler.stuck_audit import check_and_audit  # noqa: E402


def _runtime(data_file: Optional[str]) -> Runtime:
    storage = JsonFileStore(Path(data_file)) if data_file else None
    return Runtime(storage=storage)


def _run(runtime: Runtime, action):
    """加载 -> 执行 action(runtime) -> flush"""
    async def session():
        await runtime.start()
        try:
            result = action(runtime)
            if asyncio.iscoroutine(result):
                result = await result
            return result
        finally:
            await runtime.stop()

    return asyncio.run(session())


@click.group()
@click.option("--data-file", type=click.Path(dir_okay=False), default=None, help="数据文件路径")
@click.option("-v", "--verbose", is_flag=True, help="在控制台输出 INFO 日志")
@click.pass_context
def cli(ctx: click.Context, data_file: Optional[str], verbose: bool):
    """Finish OS 命令行"""
    setup_logging(console_level=logging.INFO if verbose else logging.WARNING)
    ctx.obj = {"data_file": data_file}


@cli.command()
@click.option("--nudges/--no-nudges", default=True, help="为每个卡住的任务生成提醒文案")
@click.option("--if-due", is_flag=True, help="仅在今天还没审计过且到达审计时间时运行")
@click.pass_context
def audit(ctx: click.Context, nudges: bool, if_due: bool):
    """列出卡在 90-99% 的任务"""
    runtime = _runtime(ctx.obj["data_file"])
    ran, event = _run(runtime, lambda rt: check_and_audit(rt.service, with_nudges=nudges, force=not if_due))

    if not ran:
        click.echo("ℹ️ 今天的审计还没到时间或已经运行过")
        return
    if not event["stuck"]:
        click.echo("✅ 没有卡住的任务")
        return

    click.echo(f"⚠️ 卡住的任务 ({len(event['stuck'])} 项):")
    for item in event["stuck"]:
        click.echo(f"  - [{item['task_id']}] {item['task_name']}: {item['progress']}% / {item['days']} 天")
    for nudge in event["nudges"]:
        click.echo(f"\n💬 {nudge['message']}")


@cli.command()
@click.pass_context
def stats(ctx: click.Context):
    """近 7 天的 Finish 会话统计"""
    runtime = _runtime(ctx.obj["data_file"])
    result = _run(runtime, lambda rt: (rt.service.stats(), rt.service.insights()))
    basic, insights = result

    click.echo("📊 最近 7 天")
    click.echo(f"  会话数: {basic.sessions_count}")
    click.echo(f"  总时长: {basic.total_minutes} 分钟 (平均 {basic.avg_minutes}, 中位数 {basic.median_minutes})")
    click.echo(f"  涉及任务: {basic.unique_tasks}")
    click.echo(f"  完成任务: {basic.tasks_completed_count}")
    click.echo(f"  主目标连续天数: {basic.main_goal_streak_days}")
    sr = basic.stuck_resolution
    click.echo(f"  卡点解决: {sr.stuck_to_done}/{sr.stuck_tasks} ({sr.rate:.0%})")
    click.echo("\n🧭 全局")
    click.echo(f"  任务总数: {insights.total_tasks}, 已完成: {insights.done_tasks}")
    click.echo(f"  完成率: {insights.completion_rate:.0%}")
    click.echo(f"  卡住: {insights.stuck_count}")
    click.echo(f"  平均完成天数: {insights.average_days_to_completion}")


@cli.command()
@click.argument("goal_id", type=int)
@click.pass_context
def rewards(ctx: click.Context, goal_id: int):
    """显示目标奖励的达成状态"""
    runtime = _runtime(ctx.obj["data_file"])
    try:
        statuses = _run(runtime, lambda rt: rt.service.rewards_with_status(goal_id))
    except FinishOSError as e:
        click.echo(f"❌ {e.get_user_message()}", err=True)
        raise SystemExit(1)

    if not statuses:
        click.echo("ℹ️ 这个目标还没有奖励")
        return
    for s in statuses:
        mark = "🏆" if s.earned else "⏳"
        click.echo(f"{mark} {s.reward.description} ({s.reason})")


@cli.command("export")
@click.argument("path", type=click.Path(dir_okay=False))
@click.pass_context
def export_cmd(ctx: click.Context, path: str):
    """导出完整数据到 JSON 文件"""
    runtime = _runtime(ctx.obj["data_file"])
    payload = _run(runtime, lambda rt: rt.persistence.export_payload())
    target = export_to_file(payload, Path(path), runtime.store.now())
    click.echo(f"✅ 已导出: {target}")


@cli.command("import")
@click.argument("path", type=click.Path(exists=True, dir_okay=False))
@click.confirmation_option(prompt="⚠️ 导入会替换当前全部数据，确认继续？")
@click.pass_context
def import_cmd(ctx: click.Context, path: str):
    """从 JSON 文件导入数据（任一形态，带或不带导出包装）"""
    try:
        payload = import_from_file(Path(path))
    except FinishOSError as e:
        click.echo(f"❌ {e.get_user_message()}", err=True)
        raise SystemExit(1)

    runtime = _runtime(ctx.obj["data_file"])
    data = _run(runtime, lambda rt: rt.persistence.import_payload(payload))
    click.echo(f"✅ 已导入 {len(data.goals)} 个目标 (shape={runtime.persistence.shape})")


if __name__ == "__main__":
    cli()
