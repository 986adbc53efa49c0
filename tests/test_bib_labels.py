import pytest

from korpri_run import cli, db, models
from korpri_run.bib_labels import BibLabel, LabelLayout, bib_labels_pdf_bytes
from korpri_run.qr import make_qr_png_bytes, qr_image_url


def test_pdf_is_written():
    pdf = bib_labels_pdf_bytes([BibLabel(7, "Siti Aminah", "Fun Run (5K)")])
    assert pdf.startswith(b"%PDF")


def test_labels_spill_onto_next_page():
    layout = LabelLayout(cols=2, rows=2)
    pdf = bib_labels_pdf_bytes([BibLabel(n) for n in range(1, 6)], layout=layout)
    assert b"/Count 2" in pdf


def test_grid_must_fit_a4():
    with pytest.raises(ValueError, match="does not fit"):
        LabelLayout(cols=5, rows=6).check()
    with pytest.raises(ValueError):
        LabelLayout(qr_mm=50).check()


def test_qr_helpers():
    assert make_qr_png_bytes("KR25-ABCDEF12").startswith(b"\x89PNG")
    url = qr_image_url("KR25-ABCDEF12", size=150)
    assert "size=150x150" in url
    assert "data=KR25-ABCDEF12" in url


@pytest.fixture
def cli_db(tmp_path):
    db.reset_db()
    yield f"sqlite:///{tmp_path / 'cli.db'}"
    db.reset_db()


def test_cli_migrate_staff_and_labels(cli_db, tmp_path, capsys):
    cli.main(["--db-url", cli_db, "migrate"])
    assert db.schema_exists()

    cli.main(["--db-url", cli_db, "create-staff", "--email", "gate3@example.com", "--password", "gatepass"])
    assert "Created staff gate3@example.com" in capsys.readouterr().out

    s = db.new_session()
    try:
        emails = {a.email for a in s.query(models.AdminUser)}
    finally:
        s.close()
    assert "gate3@example.com" in emails

    out = tmp_path / "bibs.pdf"
    cli.main(["--db-url", cli_db, "bib-labels", "--out", str(out)])
    assert out.read_bytes().startswith(b"%PDF")

    with pytest.raises(SystemExit):
        cli.main(["--db-url", cli_db, "bib-labels", "--out", str(out), "--cols", "9"])
