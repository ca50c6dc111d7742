import pytest
from sqlalchemy.exc import IntegrityError, OperationalError

from corpwell.models.app_assignment import AppAssignment, AppName
from corpwell.models.employee import Employee
from corpwell.schemas.onboarding import Priority, Recommendation
from corpwell.schemas.roster import EmployeeRecord
from corpwell.services.errors import ProvisioningError
from corpwell.services.provisioner import Provisioner, is_transient_db_error


class ReversingEncryptor:
    def encrypt(self, value, tenant_id, subject):
        return value[::-1] if value else value


def _record(**overrides):
    fields = dict(row_index=2, email="Jane@X.com", first_name="Jane", last_name="Doe", birth_year=1980)
    fields.update(overrides)
    return EmployeeRecord(**fields)


def test_provision_creates_employee_once(session_factory, tenant_id):
    provisioner = Provisioner(session_factory, encryptor=ReversingEncryptor())

    first = provisioner.provision(tenant_id, _record())
    second = provisioner.provision(tenant_id, _record())

    assert first.created is True
    assert second.created is False
    assert first.employee_id == second.employee_id
    with session_factory() as db:
        rows = db.query(Employee).all()
        assert len(rows) == 1
        assert rows[0].email == "jane@x.com"
        assert rows[0].first_name_encrypted == "enaJ"
        assert rows[0].account_status == "active"


def test_pending_account_without_auto_activate(session_factory, tenant_id):
    provisioner = Provisioner(session_factory)
    result = provisioner.provision(tenant_id, _record(), auto_activate=False)

    with session_factory() as db:
        assert db.get(Employee, result.employee_id).account_status == "pending"


def test_missing_email_is_a_provisioning_error(session_factory, tenant_id):
    with pytest.raises(ProvisioningError):
        Provisioner(session_factory).provision(tenant_id, _record(email=None))


def test_reassigning_an_app_is_idempotent(session_factory, tenant_id):
    provisioner = Provisioner(session_factory)
    employee = provisioner.provision(tenant_id, _record())
    rec = Recommendation(app=AppName.soberpal, reason="first", priority=Priority.high)

    provisioner.assign(tenant_id, employee.employee_id, rec)
    provisioner.assign(tenant_id, employee.employee_id, rec.model_copy(update={"reason": "second"}))

    with session_factory() as db:
        rows = db.query(AppAssignment).filter(AppAssignment.status == "active").all()
        assert len(rows) == 1
        assert rows[0].app_config["reason"] == "second"


def test_spouse_assignment_is_mirrored(session_factory, tenant_id):
    provisioner = Provisioner(session_factory)
    record = _record(include_spouse=True, spouse_email="sam@x.com")
    employee = provisioner.provision(tenant_id, record)
    recs = [
        Recommendation(app=AppName.menowellness, priority=Priority.high, include_spouse=False),
        Recommendation(app=AppName.supportpartner, priority=Priority.medium, include_spouse=True),
    ]

    results = provisioner.provision_apps(tenant_id, employee.employee_id, recs, record)
    provisioner.provision_apps(tenant_id, employee.employee_id, recs, record)

    assert [(r.app_name, r.assigned_to_spouse, r.access_level) for r in results] == [
        (AppName.menowellness, False, "basic"),
        (AppName.supportpartner, False, "basic"),
        (AppName.supportpartner, True, "spouse"),
    ]
    with session_factory() as db:
        assert db.query(AppAssignment).count() == 3
        spouse = db.query(AppAssignment).filter(AppAssignment.assigned_to_spouse.is_(True)).one()
        assert spouse.spouse_email == "sam@x.com"


def test_transient_error_classification():
    transient = OperationalError("SELECT 1", {}, Exception("server closed the connection"))
    constraint = IntegrityError("INSERT", {}, Exception("duplicate key"))

    assert is_transient_db_error(transient)
    assert not is_transient_db_error(constraint)
    assert not is_transient_db_error(ValueError("nope"))


def test_transient_errors_are_retried(session_factory, tenant_id):
    attempts = []

    def flaky_factory():
        attempts.append(1)
        if len(attempts) < 3:
            raise OperationalError("connect", {}, Exception("connection reset"))
        return session_factory()

    result = Provisioner(flaky_factory).provision(tenant_id, _record())

    assert result.created is True
    assert len(attempts) == 3
