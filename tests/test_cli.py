import argparse
import asyncio
import json

import pytest
from rich.console import Console

from museum_booking.cli import (
    build_parser,
    build_request_from_args,
    cmd_availability,
    cmd_check_id,
    cmd_manual_complete,
    cmd_manual_list,
    parse_date_input,
    parse_visitor_arg,
    render_result,
)
from museum_booking.errors import InvalidBookingRequest
from museum_booking.service import MuseumBookingService

from conftest import OTHER_VALID_ID, VALID_ID, FakePage, SessionFactory, make_request, tomorrow


def _console():
    return Console(record=True, width=200)


def test_parse_date_input():
    assert parse_date_input("1") == tomorrow()
    assert parse_date_input("2025-05-01") == "2025-05-01"


def test_parse_visitor_arg():
    visitor = parse_visitor_arg(f"李四:{OTHER_VALID_ID}:passport:12")
    assert visitor.name == "李四"
    assert visitor.id_number == OTHER_VALID_ID
    assert visitor.id_type == "passport"
    assert visitor.age == 12

    assert parse_visitor_arg(f"张三:{VALID_ID}").id_type == "id_card"
    with pytest.raises(argparse.ArgumentTypeError):
        parse_visitor_arg("张三")
    with pytest.raises(argparse.ArgumentTypeError):
        parse_visitor_arg(f"张三:{VALID_ID}:id_card:old")


def test_book_arguments_default_to_the_contact():
    args = build_parser().parse_args(["book", "--name", "张三", "--id-number", VALID_ID, "--museum", "qin_han"])
    request = build_request_from_args(args)
    assert request.museum == "qin_han"
    assert request.visit_date == tomorrow()
    assert [v.name for v in request.visitor_details] == ["张三"]
    assert request.number_of_visitors == 1


def test_book_arguments_with_visitors():
    args = build_parser().parse_args(
        [
            "book",
            "--name", "张三",
            "--id-number", VALID_ID,
            "--date", "2030-01-02",
            "--visitor", f"张三:{VALID_ID}",
            "--visitor", f"李四:{OTHER_VALID_ID}::9",
        ]
    )
    request = build_request_from_args(args)
    assert request.visit_date == "2030-01-02"
    assert request.number_of_visitors == 2
    assert request.visitor_details[1].age == 9


def test_book_from_json_file(tmp_path):
    path = tmp_path / "request.json"
    path.write_text(json.dumps(make_request().to_payload(), ensure_ascii=False), encoding="utf-8")
    args = build_parser().parse_args(["book", "--json", str(path)])
    assert build_request_from_args(args).visitor_name == "张三"


def test_book_without_name_is_invalid():
    args = build_parser().parse_args(["book"])
    with pytest.raises(InvalidBookingRequest):
        build_request_from_args(args)


def test_check_id_hints_expected_digit():
    console = _console()
    assert cmd_check_id(console, VALID_ID) is True
    assert cmd_check_id(console, VALID_ID[:17] + "1") is False
    assert "第 18 位应为 X" in console.export_text()


def test_manual_commands(settings):
    service = MuseumBookingService(settings, strategies=[])
    result = asyncio.run(service.attempt_booking(make_request()))

    console = _console()
    render_result(console, result)
    asyncio.run(cmd_manual_list(service, console, "pending"))
    text = console.export_text()
    assert result.manual_record_id in text
    assert "陕西历史博物馆" in text

    args = build_parser().parse_args(["manual-complete", result.manual_record_id, "SXHM-7"])
    assert asyncio.run(cmd_manual_complete(service, console, args)) is True
    assert asyncio.run(cmd_manual_complete(service, console, args)) is False

    console = _console()
    asyncio.run(cmd_manual_list(service, console, "pending"))
    assert "没有人工预约单" in console.export_text()


def test_parser_subcommands():
    parser = build_parser()
    assert parser.parse_args(["timing"]).command == "timing"
    assert parser.parse_args(["fixture-server"]).port == 8080
    args = parser.parse_args(["--log-level", "DEBUG", "verify", "SM1", "--name", "张三", "--id-number", VALID_ID])
    assert args.log_level == "DEBUG"
    assert args.booking_id == "SM1"


def test_availability_command(settings):
    page = FakePage(selectors=())
    page.add("#availability-check")
    page.add(".availability-result", text="available")
    service = MuseumBookingService(settings, browser_session_factory=SessionFactory(page))

    args = build_parser().parse_args(["availability", "--museum", "qin_han", "--date", "2030-01-02"])
    assert args.slot == "8:30-10:30"
    console = _console()
    assert asyncio.run(cmd_availability(service, console, args)) is True
    assert "秦汉馆 2030-01-02 8:30-10:30 有余票" in console.export_text()

    page.elements[".availability-result"].text = "unavailable"
    console = _console()
    assert asyncio.run(cmd_availability(service, console, args)) is False
    assert "暂无余票" in console.export_text()
