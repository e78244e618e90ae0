from __future__ import annotations

import argparse
import asyncio
import json
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from rich.console import Console
from rich.table import Table

from .errors import ManualRecordAlreadyCompleted, ManualRecordNotFound, MuseumBookingError
from .idcard import check_digit, is_valid_id_number, mask_id_number
from .logs import setup_logging
from .models import MANUAL_COMPLETED, MANUAL_PENDING, MUSEUM_SITES, BookingAttemptResult, BookingRequest, VisitorDetail
from .service import MuseumBookingService


def parse_date_input(date_input: str) -> str:
    """解析日期输入，支持数字 offset 或 YYYY-MM-DD"""
    if date_input.isdigit():
        target_date = datetime.now() + timedelta(days=int(date_input))
        return target_date.strftime("%Y-%m-%d")
    return date_input


def parse_visitor_arg(raw: str) -> VisitorDetail:
    """姓名:证件号[:证件类型[:年龄]]"""
    parts = [item.strip() for item in raw.split(":")]
    if len(parts) < 2 or not parts[0] or not parts[1]:
        raise argparse.ArgumentTypeError(f"游客格式应为 姓名:证件号[:证件类型[:年龄]]，收到 {raw!r}")
    age: Optional[int] = None
    if len(parts) > 3 and parts[3]:
        try:
            age = int(parts[3])
        except ValueError:
            raise argparse.ArgumentTypeError(f"年龄必须是整数: {parts[3]!r}") from None
    return VisitorDetail(
        name=parts[0],
        id_number=parts[1],
        id_type=parts[2] if len(parts) > 2 and parts[2] else "id_card",
        age=age,
    )


def build_request_from_args(args) -> BookingRequest:
    if args.json:
        with open(args.json, "r", encoding="utf-8") as handle:
            return BookingRequest.from_dict(json.load(handle))
    visitors: List[VisitorDetail] = list(args.visitor or [])
    if not visitors:
        visitors = [VisitorDetail(name=args.name, id_number=args.id_number, id_type=args.id_type)]
    return BookingRequest(
        visitor_name=args.name,
        id_number=args.id_number,
        id_type=args.id_type,
        museum=args.museum,
        visit_date=parse_date_input(args.date),
        time_slot=args.slot,
        visitor_details=visitors,
    )


def render_result(console: Console, result: BookingAttemptResult) -> None:
    color = "green" if result.success and not result.is_manual else "yellow"
    table = Table(title="预约结果", show_header=False)
    table.add_column("字段", style="cyan")
    table.add_column("值")
    table.add_row("结果", f"[{color}]{'成功' if result.success else '失败'}[/{color}]")
    table.add_row("来源", result.provenance)
    table.add_row("预约号", result.booking_reference or "-")
    table.add_row("确认码", result.confirmation_code or "-")
    table.add_row("核验", result.verification or "-")
    if result.endpoint:
        table.add_row("接口/页面", result.endpoint)
    if result.deadline:
        table.add_row("处理截止", result.deadline.strftime("%Y-%m-%d %H:%M"))
    if result.manual_record_id:
        table.add_row("人工单号", result.manual_record_id)
    console.print(table)

    if result.failures:
        failures = Table(title="已尝试的策略")
        failures.add_column("策略", style="cyan")
        failures.add_column("原因", overflow="fold")
        for name, reason in result.failures:
            failures.add_row(name, reason)
        console.print(failures)

    if result.instructions:
        console.print(result.instructions)


def cmd_timing(service: MuseumBookingService, console: Console) -> None:
    status = service.timing_status()
    table = Table(title=f"放票状态（{status.timezone}）", show_header=False)
    table.add_column("字段", style="cyan")
    table.add_column("值")
    table.add_row("当前时间", status.current_time)
    table.add_row("放票时间", status.release_time)
    table.add_row("阶段", status.status)
    table.add_row("可预约", "[green]是[/green]" if status.can_book else "[red]否[/red]")
    table.add_row("下次放票", status.next_release)
    table.add_row("距放票（分钟）", str(status.minutes_until_release))
    console.print(table)


def cmd_check_id(console: Console, value: str) -> bool:
    valid = is_valid_id_number(value)
    if valid:
        console.print(f"[green]{mask_id_number(value)} 校验通过[/green]")
        return True
    hint = ""
    if len(value) == 18 and value[:17].isascii() and value[:17].isdigit():
        hint = f"（第 18 位应为 {check_digit(value[:17])}）"
    console.print(f"[red]{mask_id_number(value)} 校验失败{hint}[/red]")
    return False


async def cmd_book(service: MuseumBookingService, console: Console, args) -> None:
    request = build_request_from_args(args)
    console.print(
        f"[cyan]开始预约[/cyan] {MUSEUM_SITES[request.museum].name} {request.visit_date} {request.time_slot} "
        f"共 {request.number_of_visitors} 人"
    )
    try:
        result = await service.attempt_booking(request, timeout=args.timeout)
    finally:
        await service.drain()
    render_result(console, result)


async def cmd_availability(service: MuseumBookingService, console: Console, args) -> bool:
    visit_date = parse_date_input(args.date)
    site = MUSEUM_SITES[args.museum]
    available = await service.check_availability(visit_date, args.slot, args.museum)
    if available:
        console.print(f"[green]{site.name} {visit_date} {args.slot} 有余票[/green]")
    else:
        console.print(f"[yellow]{site.name} {visit_date} {args.slot} 暂无余票或查询失败[/yellow]")
    return available


async def cmd_verify(service: MuseumBookingService, console: Console, args) -> None:
    found = await service.verify(args.booking_id, args.name, args.id_number)
    record = await service.verification_status(args.booking_id)
    if found:
        console.print(f"[green]预约 {args.booking_id} 已在平台确认[/green]")
    else:
        console.print(f"[yellow]预约 {args.booking_id} 暂未查到，稍后可重试[/yellow]")
    if record is not None:
        console.print(
            f"累计核验 {record.attempts} 次，最近一次 "
            f"{record.last_attempt_at.strftime('%Y-%m-%d %H:%M:%S') if record.last_attempt_at else '-'}"
        )


async def cmd_manual_list(service: MuseumBookingService, console: Console, status: Optional[str]) -> None:
    records = await service.list_manual_bookings(None if status == "all" else status)
    if not records:
        console.print("[yellow]没有人工预约单[/yellow]")
        return
    table = Table(title="人工预约单")
    table.add_column("单号", style="cyan")
    table.add_column("状态")
    table.add_column("场馆")
    table.add_column("日期")
    table.add_column("时段")
    table.add_column("联系人")
    table.add_column("截止")
    table.add_column("官方预约号")
    for record in records:
        data: Dict[str, Any] = record.data
        site = MUSEUM_SITES.get(str(data.get("museum")))
        status_text = "[green]已完成[/green]" if record.status == MANUAL_COMPLETED else "[yellow]待处理[/yellow]"
        table.add_row(
            record.id,
            status_text,
            site.name if site else str(data.get("museum")),
            str(data.get("visitDate", "-")),
            str(data.get("timeSlot", "-")),
            str(data.get("visitorName", "-")),
            record.deadline.strftime("%m-%d %H:%M") if record.deadline else "-",
            record.official_reference or "-",
        )
    console.print(table)


async def cmd_manual_complete(service: MuseumBookingService, console: Console, args) -> bool:
    try:
        record = await service.complete_manual_booking(args.record_id, args.official_reference)
    except (ManualRecordNotFound, ManualRecordAlreadyCompleted) as exc:
        console.print(f"[red]{exc}[/red]")
        return False
    console.print(f"[green]{record.id} 已完成，官方预约号 {record.official_reference}[/green]")
    return True


def cmd_fixture_server(console: Console, host: str, port: int) -> None:
    import uvicorn  # pylint: disable=import-outside-toplevel

    from .fixture_site import create_fixture_app  # pylint: disable=import-outside-toplevel

    console.print(f"[cyan]模拟票务平台启动于 http://{host}:{port}/quickticket/index.html[/cyan]")
    uvicorn.run(create_fixture_app(), host=host, port=port, log_level="info")


def run_cli(args) -> int:
    import config as CFG  # pylint: disable=import-outside-toplevel

    setup_logging(args.log_level or CFG.LOG_LEVEL, CFG.LOG_FILE)
    console = Console()

    if args.command == "check-id":
        return 0 if cmd_check_id(console, args.id_number) else 1

    if args.command == "fixture-server":
        cmd_fixture_server(console, args.host, args.port)
        return 0

    service = MuseumBookingService(CFG.SETTINGS)
    try:
        if args.command == "timing":
            cmd_timing(service, console)
        elif args.command == "book":
            asyncio.run(cmd_book(service, console, args))
        elif args.command == "availability":
            return 0 if asyncio.run(cmd_availability(service, console, args)) else 1
        elif args.command == "verify":
            asyncio.run(cmd_verify(service, console, args))
        elif args.command == "manual-list":
            asyncio.run(cmd_manual_list(service, console, args.status))
        elif args.command == "manual-complete":
            return 0 if asyncio.run(cmd_manual_complete(service, console, args)) else 1
        else:
            console.print("[yellow]Unknown command[/yellow]")
            return 2
    except MuseumBookingError as exc:
        console.print(f"[red]{exc}[/red]")
        return 1
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Museum ticket booking automation CLI")
    parser.add_argument("--log-level", type=str, help="Override MUSEUM_LOG_LEVEL")
    sub = parser.add_subparsers(dest="command")

    sub.add_parser("timing", help="Show release window status in the platform timezone")

    p_check = sub.add_parser("check-id", help="Validate an 18-digit resident ID number")
    p_check.add_argument("id_number", type=str)

    p_book = sub.add_parser("book", help="Run the escalation engine for one booking")
    p_book.add_argument("--json", type=str, help="Read the whole request from a JSON file (camelCase or snake_case)")
    p_book.add_argument("--name", type=str, help="Contact visitor name")
    p_book.add_argument("--id-number", type=str, help="Contact ID number")
    p_book.add_argument("--id-type", type=str, default="id_card", help="ID type (default id_card)")
    p_book.add_argument("--museum", type=str, default="main", choices=sorted(MUSEUM_SITES), help="Museum site")
    p_book.add_argument("--date", type=str, default="1", help="Visit date: offset in days or YYYY-MM-DD")
    p_book.add_argument("--slot", type=str, default="8:30-10:30", help="Time slot, e.g. 8:30-10:30")
    p_book.add_argument(
        "--visitor",
        type=parse_visitor_arg,
        action="append",
        help="Visitor as name:id_number[:id_type[:age]]; repeat up to 5 times (default: the contact)",
    )
    p_book.add_argument("--timeout", type=float, help="Give up waiting after N seconds (the run keeps going)")

    p_avail = sub.add_parser("availability", help="Check remaining tickets for a slot through the booking page")
    p_avail.add_argument("--museum", type=str, default="main", choices=sorted(MUSEUM_SITES), help="Museum site")
    p_avail.add_argument("--date", type=str, default="1", help="Visit date: offset in days or YYYY-MM-DD")
    p_avail.add_argument("--slot", type=str, default="8:30-10:30", help="Time slot, e.g. 8:30-10:30")

    p_verify = sub.add_parser("verify", help="Check that a booking is visible on the platform")
    p_verify.add_argument("booking_id", type=str)
    p_verify.add_argument("--name", type=str, required=True)
    p_verify.add_argument("--id-number", type=str, required=True)

    p_list = sub.add_parser("manual-list", help="List manual fallback bookings")
    p_list.add_argument(
        "--status",
        type=str,
        default=MANUAL_PENDING,
        choices=[MANUAL_PENDING, MANUAL_COMPLETED, "all"],
    )

    p_complete = sub.add_parser("manual-complete", help="Record the official reference of a manual booking")
    p_complete.add_argument("record_id", type=str)
    p_complete.add_argument("official_reference", type=str)

    p_fixture = sub.add_parser("fixture-server", help="Serve the local fixture ticket platform")
    p_fixture.add_argument("--host", type=str, default="127.0.0.1")
    p_fixture.add_argument("--port", type=int, default=8080)

    return parser
