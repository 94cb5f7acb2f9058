import json

from conftest import make_event, make_pledge
from settlement.extensions import db
from settlement.models import BikeRideEvent, Profile, UserRole


def _json_tail(output):
    return json.loads(output[output.index("{"):])


def test_grant_admin_creates_profile_and_role(app):
    runner = app.test_cli_runner()

    res = runner.invoke(args=["settlement", "grant-admin", "Ops@Example.org", "--role", "owner"])

    assert res.exit_code == 0, res.output
    profile = Profile.find_by_email("ops@example.org")
    assert profile is not None
    assert UserRole.is_admin(profile.id)

    again = runner.invoke(args=["settlement", "grant-admin", "ops@example.org", "--role", "owner"])
    assert again.exit_code == 0
    assert db.session.query(UserRole).filter_by(user_id=profile.id).count() == 1


def test_issue_token_for_unknown_email_fails(app):
    res = app.test_cli_runner().invoke(args=["settlement", "issue-token", "ghost@example.org"])
    assert res.exit_code == 1


def test_process_charges_command(app, gateway):
    ev = make_event()
    make_pledge(ev, "25")

    res = app.test_cli_runner().invoke(args=["settlement", "process-charges", str(ev.id), "40"])

    assert res.exit_code == 0, res.output
    assert _json_tail(res.output)["summary"]["charged"] == 1
    assert db.session.get(BikeRideEvent, ev.id).status == "charges_processed"


def test_process_charges_rejects_unknown_event(app):
    res = app.test_cli_runner().invoke(args=["settlement", "process-charges", "999", "10"])
    assert res.exit_code == 1
    assert "Event not found" in res.output


def test_reconcile_pending_command(app):
    res = app.test_cli_runner().invoke(args=["settlement", "reconcile-pending", "--mode", "test"])
    assert res.exit_code == 0, res.output
    assert _json_tail(res.output)["summary"]["total"] == 0


def test_recalculate_amounts_command(app):
    res = app.test_cli_runner().invoke(args=["settlement", "recalculate-amounts"])
    assert res.exit_code == 0, res.output
    assert _json_tail(res.output)["updatedCount"] == 0
