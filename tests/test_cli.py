from __future__ import annotations

from datetime import date, datetime, timezone
from pathlib import Path

import pytest

from agenda_watch import cli
from agenda_watch.extract import ToolchainError
from agenda_watch.models import ListPage, Meeting, MeetingAgenda
from agenda_watch.sources import Source, SourceError
from agenda_watch.store import save_meeting


@pytest.fixture(autouse=True)
def clean_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    monkeypatch.delenv("AGENDA_WATCH_CONFIG", raising=False)
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "xdg"))
    monkeypatch.chdir(tmp_path)
    return tmp_path


def _seed(db_path: Path) -> Meeting:
    meeting = Meeting(
        id="regional-council/march-4-2025",
        type="Regional Council",
        date=date(2025, 3, 4),
        note="Rescheduled",
        urls={
            "agenda": "https://www.halifax.ca/city-hall/regional-council/march-4-2025",
            "video": "https://video.example/rc",
        },
    )
    agenda = MeetingAgenda(
        content_html="<p>Snow removal budget</p>",
        content_text="Snow removal budget\n",
        content_urls=["https://www.halifax.ca/media/777"],
    )
    save_meeting(
        db_path=db_path,
        meeting=meeting,
        agenda=agenda,
        observed=datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc),
    )
    return meeting


def test_requires_an_action() -> None:
    with pytest.raises(SystemExit) as excinfo:
        cli.main([])
    assert excinfo.value.code == 2


def test_init_and_print_config_path(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    assert cli.main(["--print-config-path"]) == 0
    assert "(built-in defaults)" in capsys.readouterr().out

    assert cli.main(["--init-config"]) == 0
    xdg = tmp_path / "xdg" / "agenda-watch" / "config.yaml"
    assert xdg.exists()
    assert str(xdg) in capsys.readouterr().out

    assert cli.main(["--print-config-path"]) == 0
    assert capsys.readouterr().out.strip() == str(xdg)


def test_bad_config_exits_2(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    cfg = tmp_path / "bad.yaml"
    cfg.write_text("sources: [toronto]\n", encoding="utf-8")

    assert cli.main(["--config", str(cfg), "--status"]) == 2
    assert "toronto" in capsys.readouterr().err


def test_status_search_history_and_cited_by(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    db_path = tmp_path / "m.sqlite3"
    meeting = _seed(db_path)

    assert cli.main(["--db", str(db_path), "--status"]) == 0
    out = capsys.readouterr().out
    assert "meetings: 1" in out
    assert "external_content_urls: 1" in out
    assert "external_content: 0" in out

    assert cli.main(["--db", str(db_path), "--search", "snow"]) == 0
    out = capsys.readouterr().out
    assert meeting.url("agenda") in out
    assert "1 meeting(s)" in out

    assert cli.main(["--db", str(db_path), "--search", "snow", "--documents"]) == 0
    assert "0 document(s)" in capsys.readouterr().out

    assert cli.main(["--db", str(db_path), "--history", meeting.id]) == 0
    out = capsys.readouterr().out
    assert "(Rescheduled)" in out
    assert "video: https://video.example/rc" in out

    assert cli.main(["--db", str(db_path), "--cited-by", "https://www.halifax.ca/media/777"]) == 0
    assert capsys.readouterr().out.strip() == meeting.id


class _BrokenSource(Source):
    name = "broken"

    def list(self, token: str) -> ListPage:
        raise SourceError("bad status 503")


def test_crawl_failure_exits_2(tmp_path: Path, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]) -> None:
    monkeypatch.setattr(cli, "create_source", lambda name, client, **_kw: _BrokenSource())

    assert cli.main(["--db", str(tmp_path / "m.sqlite3"), "--crawl"]) == 2
    err = capsys.readouterr().err
    assert "Crawl failed" in err
    assert "bad status 503" in err


def test_crawl_success_prints_summary(tmp_path: Path, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]) -> None:
    class _EmptySource(Source):
        name = "empty"

        def list(self, token: str) -> ListPage:
            return ListPage(meetings=[])

    monkeypatch.setattr(cli, "create_source", lambda name, client, **_kw: _EmptySource())

    assert cli.main(["--db", str(tmp_path / "m.sqlite3"), "--crawl"]) == 0
    assert "saved=0" in capsys.readouterr().out


def test_missing_pdf_tooling_exits_2(tmp_path: Path, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]) -> None:
    def no_tools(**_kwargs):
        raise ToolchainError("no PDF tooling available")

    monkeypatch.setattr(cli, "process_external_content_urls", no_tools)

    assert cli.main(["--db", str(tmp_path / "m.sqlite3"), "--process-external"]) == 2
    assert "no PDF tooling available" in capsys.readouterr().err
