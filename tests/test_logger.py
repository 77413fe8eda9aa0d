"""Tests for the verbosity-gated ServerLogger."""

from jsonserver.logger import ServerLogger


def test_threshold(capsys):
    logger = ServerLogger(verbosity=2)
    assert logger.should_log(1)
    assert logger.should_log(2)
    assert not logger.should_log(3)

    logger.log(3, "[HIDDEN] quiet")
    logger.log(2, "[SHOWN] loud")
    out = capsys.readouterr().out
    assert "[HIDDEN]" not in out
    assert "[SHOWN] loud" in out


def test_writes_daily_file(tmp_path, capsys):
    logger = ServerLogger(verbosity=1, log_dir=str(tmp_path / "logs"))
    logger.info("[START] hello")
    logger.warning("careful")
    files = list((tmp_path / "logs").iterdir())
    assert len(files) == 1
    assert files[0].suffix == ".log"
    content = files[0].read_text(encoding="utf-8")
    assert "[START] hello" in content
    assert "[WARN] careful" in content
