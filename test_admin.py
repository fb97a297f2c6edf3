"""
Admin dashboard: access control, filters, user details and the Excel export.
"""
from datetime import date, datetime
from io import BytesIO

import openpyxl

from app import db, Child, AuditLog, filter_users
from conftest import login


def add_family(make_user, email, city="Toronto", province="ON", address="1 King St", postal_code="M5H 1A1",
               created_at=datetime(2025, 6, 1), children=()):
    user = make_user(
        email=email,
        city=city,
        province=province,
        address=address,
        postal_code=postal_code,
        created_at=created_at,
    )
    for name, age, hearing, equipment in children:
        db.session.add(Child(
            user_id=user.id, name=name, age=age,
            hearing_loss_type=hearing, equipment_type=equipment,
        ))
    db.session.commit()
    return user


def test_dashboard_requires_admin(client, make_user):
    assert "/login" in client.get("/admin/dashboard").headers["Location"]

    make_user()
    login(client, "parent@familymail.ca")
    response = client.get("/admin/dashboard")
    assert response.status_code == 302
    assert response.headers["Location"].endswith("/")


def test_dashboard_lists_users(admin_client, make_user):
    add_family(make_user, "one@familymail.ca")

    page = admin_client.get("/admin/dashboard").get_data(as_text=True)

    assert "one@familymail.ca" in page
    assert "Ada Admin" in page


def test_filters(make_user):
    toronto = add_family(make_user, "t@familymail.ca", children=[("Sam", 4, "Mild", "Hearing Aids")])
    ottawa = add_family(
        make_user, "o@familymail.ca", city="Ottawa", address="99 Bank St", postal_code="K1P 5N2",
        created_at=datetime(2025, 7, 15), children=[("Lee", 12, "Profound", "Cochlear Implant")],
    )
    halifax = add_family(
        make_user, "h@familymail.ca", city="Halifax", province="NS",
        created_at=datetime(2025, 8, 1, 23, 30),
    )
    users = [toronto, ottawa, halifax]

    assert filter_users(users) == users
    assert filter_users(users, address="k1p") == [ottawa]
    assert filter_users(users, address="king") == [toronto, halifax]
    assert filter_users(users, city="ottawa") == [ottawa]
    assert filter_users(users, province="NS") == [halifax]
    assert filter_users(users, min_age=10) == [ottawa]
    assert filter_users(users, max_age=5) == [toronto]
    assert filter_users(users, min_age=5, max_age=10) == []
    assert filter_users(users, hearing_loss_type="profound") == [ottawa]
    assert filter_users(users, equipment_type="HEARING AIDS") == [toronto]
    assert filter_users(users, equipment_type="hearing") == []
    assert filter_users(users, start_date="2025-07-01") == [ottawa, halifax]
    # End date is inclusive of the whole day
    assert filter_users(users, end_date="2025-08-01") == users
    assert filter_users(users, start_date="2025-06-02", end_date="2025-07-31") == [ottawa]
    assert filter_users(users, start_date="not-a-date") == users


def test_dashboard_applies_query_filters(admin_client, make_user):
    add_family(make_user, "t@familymail.ca", children=[("Sam", 4, "Mild", "Hearing Aids")])
    add_family(make_user, "o@familymail.ca", city="Ottawa", children=[("Lee", 12, "Profound", "Cochlear Implant")])

    page = admin_client.get("/admin/dashboard?city=Ottawa&minAge=10").get_data(as_text=True)

    assert "o@familymail.ca" in page
    assert "t@familymail.ca" not in page


def test_user_details_json(admin_client, make_user):
    user = add_family(make_user, "kid@familymail.ca", children=[("Sam", 4, "Mild", "Hearing Aids")])

    data = admin_client.get(f"/admin/user/{user.id}").get_json()

    assert data["email"] == "kid@familymail.ca"
    assert data["role"] == "USER"
    assert data["children"][0]["name"] == "Sam"
    assert data["membership"] is None


def test_user_details_missing(admin_client):
    response = admin_client.get("/admin/user/9999")
    assert response.status_code == 404
    assert response.get_json() == {"error": "User not found"}


def test_export_users_workbook(admin_client, make_user):
    add_family(make_user, "kid@familymail.ca", children=[
        ("Sam", 4, "Mild", "Hearing Aids"),
        ("Robin", 7, None, None),
    ])

    response = admin_client.get("/admin/export-users")

    assert response.status_code == 200
    assert response.headers["Content-Type"].startswith(
        "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"
    )
    assert f"users_and_children_{date.today().isoformat()}.xlsx" in response.headers["Content-Disposition"]

    wb = openpyxl.load_workbook(BytesIO(response.data))
    assert wb.sheetnames == ["Users", "Children"]

    users_sheet = wb["Users"]
    assert users_sheet["A1"].value == "ID"
    assert users_sheet["A1"].font.bold
    emails = [row[4] for row in users_sheet.iter_rows(min_row=2, values_only=True)]
    assert sorted(emails) == ["admin@familymail.ca", "kid@familymail.ca"]

    children = list(wb["Children"].iter_rows(min_row=2, values_only=True))
    assert [row[1] for row in children] == ["Sam", "Robin"]
    assert children[0][12] == "kid@familymail.ca"

    assert AuditLog.query.filter_by(action="export_users").count() == 1
