import json
import os
import unittest
from datetime import date, timedelta
from decimal import Decimal
from unittest.mock import MagicMock, call, patch

os.environ["DATABASE_URL"] = "sqlite://"

from fastapi.testclient import TestClient  # noqa: E402
from sqlalchemy import insert, select  # noqa: E402

from budgetdesk import main  # noqa: E402
from budgetdesk.plaid_client import PlaidApiError, PlaidUnavailable  # noqa: E402

CSV_HEADER = (
    "TransactionId,Date,Amount,Merchant,Category,BankName,BankSymbol,"
    "AccountName,AccountType,AccountMask,TransactionStatus"
)


def headers(user_id: int) -> dict:
    return {"x-user-id": str(user_id)}


class AppImportTests(unittest.TestCase):
    def test_app_loads_with_every_router(self) -> None:
        paths = {route.path for route in main.app.routes}
        for path in (
            "/auth/signup",
            "/fin-accounts/manual/csv",
            "/budgets/{budget_id}/plaid/sync",
            "/budgets/{budget_id}/onboarding/analysis",
        ):
            self.assertIn(path, paths)

    def test_csv_row_model_accepts_dates(self) -> None:
        row = main.CSVImportResponse(
            is_valid=True, rows=[{"row_number": 2, "date": "2024-01-05"}]
        ).rows[0]
        self.assertEqual(row.date, date(2024, 1, 5))


class ApiTestCase(unittest.TestCase):
    def setUp(self) -> None:
        main.metadata.create_all(main.engine)
        with main.engine.begin() as conn:
            main.seed_built_in_categories(conn)
        self.client = TestClient(main.app)
        self.today = date.today()

    def tearDown(self) -> None:
        main.metadata.drop_all(main.engine)

    def signup(self, email: str = "owner@example.com") -> int:
        response = self.client.post("/auth/signup", json={"email": email, "password": "secret-pass"})
        self.assertEqual(response.status_code, 200, response.text)
        return response.json()["id"]

    def create_budget(self, user_id: int, name: str = "Household") -> int:
        response = self.client.post("/budgets", json={"name": name}, headers=headers(user_id))
        self.assertEqual(response.status_code, 200, response.text)
        return response.json()["id"]

    def create_manual_account(
        self, user_id: int, symbol: str = "MYBK", mask: str = "1234", balance: str = "0"
    ) -> int:
        institution = self.client.post(
            "/fin-accounts/manual/institutions",
            json={"name": "My Bank", "symbol": symbol},
            headers=headers(user_id),
        )
        self.assertEqual(institution.status_code, 200, institution.text)
        account = self.client.post(
            "/fin-accounts/manual/accounts",
            json={
                "institution_id": institution.json()["id"],
                "name": "Checking",
                "type": "depository",
                "mask": mask,
                "balance_current": balance,
            },
            headers=headers(user_id),
        )
        self.assertEqual(account.status_code, 200, account.text)
        return account.json()["id"]

    def add_transaction(self, user_id: int, account_id: int, **overrides) -> dict:
        payload = {
            "account_id": account_id,
            "date": self.today.isoformat(),
            "amount": "12.50",
            "merchant_name": "Blue Bottle Coffee",
        }
        payload.update(overrides)
        response = self.client.post(
            "/fin-accounts/manual/transactions", json=payload, headers=headers(user_id)
        )
        self.assertEqual(response.status_code, 200, response.text)
        return response.json()

    def link_manual_account(self, user_id: int, budget_id: int, account_id: int) -> int:
        response = self.client.post(
            f"/budgets/{budget_id}/accounts",
            json={"manual_account_id": account_id},
            headers=headers(user_id),
        )
        self.assertEqual(response.status_code, 200, response.text)
        return response.json()["id"]

    def category_id(self, name: str) -> int:
        with main.engine.begin() as conn:
            return conn.execute(
                select(main.categories.c.id).where(
                    main.categories.c.name == name, main.categories.c.budget_id.is_(None)
                )
            ).scalar_one()

    def group_id(self, name: str) -> int:
        with main.engine.begin() as conn:
            return conn.execute(
                select(main.category_groups.c.id).where(
                    main.category_groups.c.name == name, main.category_groups.c.budget_id.is_(None)
                )
            ).scalar_one()


class AuthTests(ApiTestCase):
    def test_signup_and_login(self) -> None:
        response = self.client.post(
            "/auth/signup", json={"email": " Sam@Example.com ", "password": "pw", "full_name": "Sam"}
        )
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["email"], "sam@example.com")

        duplicate = self.client.post("/auth/signup", json={"email": "sam@example.com", "password": "x"})
        self.assertEqual(duplicate.status_code, 409)

        login = self.client.post("/auth/login", json={"email": "SAM@example.com", "password": "pw"})
        self.assertEqual(login.status_code, 200)
        self.assertEqual(login.json()["full_name"], "Sam")

        wrong = self.client.post("/auth/login", json={"email": "sam@example.com", "password": "nope"})
        self.assertEqual(wrong.status_code, 401)

    def test_identity_header_is_checked(self) -> None:
        self.assertEqual(self.client.get("/budgets").status_code, 401)
        self.assertEqual(self.client.get("/budgets", headers={"x-user-id": "abc"}).status_code, 400)
        self.assertEqual(self.client.get("/budgets", headers=headers(999)).status_code, 404)


class BudgetTests(ApiTestCase):
    def test_create_and_list_budgets(self) -> None:
        owner = self.signup()
        response = self.client.post(
            "/budgets", json={"name": " Family ", "budget_type": "Business"}, headers=headers(owner)
        )

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["name"], "Family")
        self.assertEqual(body["budget_type"], "business")
        self.assertEqual(body["role"], "owner")
        self.assertEqual(body["current_onboarding_step"], "start")
        self.assertEqual(body["rule_order"], [])

        listed = self.client.get("/budgets", headers=headers(owner)).json()
        self.assertEqual([budget["id"] for budget in listed], [body["id"]])

        invalid = self.client.post("/budgets", json={"name": "x", "budget_type": "shared"}, headers=headers(owner))
        self.assertEqual(invalid.status_code, 400)

    def test_member_roles_gate_access(self) -> None:
        owner = self.signup()
        reporter = self.signup("reporter@example.com")
        stranger = self.signup("stranger@example.com")
        budget_id = self.create_budget(owner)

        added = self.client.post(
            f"/budgets/{budget_id}/members",
            json={"email": "Reporter@Example.com", "role": "reporter"},
            headers=headers(owner),
        )
        self.assertEqual(added.status_code, 200)
        self.assertEqual(added.json()["role"], "reporter")

        self.assertEqual(self.client.get(f"/budgets/{budget_id}", headers=headers(reporter)).status_code, 200)
        write = self.client.post(
            f"/budgets/{budget_id}/tags", json={"tag_name": "trip"}, headers=headers(reporter)
        )
        self.assertEqual(write.status_code, 403)
        self.assertEqual(self.client.get(f"/budgets/{budget_id}", headers=headers(stranger)).status_code, 403)
        self.assertEqual(self.client.get("/budgets/9999", headers=headers(owner)).status_code, 404)

        unknown = self.client.post(
            f"/budgets/{budget_id}/members", json={"email": "ghost@example.com"}, headers=headers(owner)
        )
        self.assertEqual(unknown.status_code, 404)
        again = self.client.post(
            f"/budgets/{budget_id}/members", json={"email": "reporter@example.com"}, headers=headers(owner)
        )
        self.assertEqual(again.status_code, 409)
        by_reporter = self.client.post(
            f"/budgets/{budget_id}/members", json={"email": "stranger@example.com"}, headers=headers(reporter)
        )
        self.assertEqual(by_reporter.status_code, 403)

        members = self.client.get(f"/budgets/{budget_id}/members", headers=headers(owner)).json()
        self.assertEqual([member["role"] for member in members], ["owner", "reporter"])

        remove_owner = self.client.delete(f"/budgets/{budget_id}/members/{owner}", headers=headers(owner))
        self.assertEqual(remove_owner.status_code, 409)
        removed = self.client.delete(f"/budgets/{budget_id}/members/{reporter}", headers=headers(owner))
        self.assertEqual(removed.json(), {"status": "deleted"})
        self.assertEqual(self.client.get(f"/budgets/{budget_id}", headers=headers(reporter)).status_code, 403)


class ManualAccountTests(ApiTestCase):
    def test_institution_validation(self) -> None:
        user = self.signup()
        created = self.client.post(
            "/fin-accounts/manual/institutions", json={"name": "My Bank", "symbol": "mybk"}, headers=headers(user)
        )
        self.assertEqual(created.json()["symbol"], "MYBK")

        duplicate = self.client.post(
            "/fin-accounts/manual/institutions", json={"name": "Other", "symbol": "MYBK"}, headers=headers(user)
        )
        self.assertEqual(duplicate.status_code, 409)
        invalid = self.client.post(
            "/fin-accounts/manual/institutions", json={"name": "Bad", "symbol": "M1"}, headers=headers(user)
        )
        self.assertEqual(invalid.status_code, 400)

    def test_accounts_belong_to_their_owner(self) -> None:
        user = self.signup()
        other = self.signup("other@example.com")
        account_id = self.create_manual_account(user)
        institution_id = self.client.get(
            "/fin-accounts/manual/institutions", headers=headers(user)
        ).json()[0]["id"]

        bad_mask = self.client.post(
            "/fin-accounts/manual/accounts",
            json={"institution_id": institution_id, "name": "Card", "type": "credit", "mask": "12a4"},
            headers=headers(user),
        )
        self.assertEqual(bad_mask.status_code, 400)
        foreign = self.client.post(
            "/fin-accounts/manual/accounts",
            json={"institution_id": institution_id, "name": "Card", "type": "credit", "mask": "9999"},
            headers=headers(other),
        )
        self.assertEqual(foreign.status_code, 403)
        delete = self.client.delete(f"/fin-accounts/manual/accounts/{account_id}", headers=headers(other))
        self.assertEqual(delete.status_code, 403)

    def test_transactions_get_generated_ids(self) -> None:
        user = self.signup()
        account_id = self.create_manual_account(user)

        first = self.add_transaction(user, account_id)
        second = self.add_transaction(user, account_id, amount="-2000", merchant_name="Payroll")
        self.assertEqual(first["user_tx_id"], "MYBK123400000001")
        self.assertEqual(second["user_tx_id"], "MYBK123400000002")
        self.assertEqual(first["tx_status"], "posted")
        self.assertEqual(first["iso_currency_code"], "USD")
        self.assertEqual(Decimal(second["amount"]), Decimal("-2000"))

        explicit = self.add_transaction(user, account_id, user_tx_id="CUSTOM-001", tx_status="Pending")
        self.assertEqual(explicit["tx_status"], "pending")
        duplicate = self.client.post(
            "/fin-accounts/manual/transactions",
            json={"account_id": account_id, "date": "2024-01-01", "amount": "1", "user_tx_id": "CUSTOM-001"},
            headers=headers(user),
        )
        self.assertEqual(duplicate.status_code, 409)
        lower = self.client.post(
            "/fin-accounts/manual/transactions",
            json={"account_id": account_id, "date": "2024-01-01", "amount": "1", "user_tx_id": "lower-001"},
            headers=headers(user),
        )
        self.assertEqual(lower.status_code, 400)

        updated = self.client.put(
            f"/fin-accounts/manual/transactions/{first['id']}",
            json={"account_id": account_id, "date": "2024-02-02", "amount": "15", "merchant_name": "Cafe"},
            headers=headers(user),
        )
        self.assertEqual(updated.status_code, 200)
        self.assertEqual(updated.json()["user_tx_id"], "MYBK123400000001")
        self.assertEqual(updated.json()["merchant_name"], "Cafe")

        state = self.client.get("/fin-accounts/state", headers=headers(user)).json()
        institution = state["institutions"][0]
        self.assertEqual(institution["symbol"], "MYBK")
        self.assertEqual(len(institution["accounts"][0]["transactions"]), 3)
        self.assertEqual(state["plaid_items"], [])

        deleted = self.client.delete(f"/fin-accounts/manual/transactions/{first['id']}", headers=headers(user))
        self.assertEqual(deleted.json(), {"status": "deleted"})


class CSVImportTests(ApiTestCase):
    def upload(self, user_id: int, contents: str, filename: str = "transactions.csv", mapping=None):
        files = {"file": (filename, contents.encode("utf-8"), "text/csv")}
        if mapping is None:
            return self.client.post("/fin-accounts/manual/csv", files=files, headers=headers(user_id))
        return self.client.post(
            "/fin-accounts/manual/csv/mapped",
            files=files,
            data={"column_mapping": mapping},
            headers=headers(user_id),
        )

    def test_import_creates_institutions_accounts_and_transactions(self) -> None:
        user = self.signup()
        contents = "\n".join(
            [
                CSV_HEADER,
                "TX00000001,2024-01-05,4.50,Blue Bottle,Coffee,My Bank,mybk,Checking,depository,1234,posted",
                ",2024-01-06,-1500,Payroll,Income,My Bank,MYBK,Checking,depository,1234,",
            ]
        )

        response = self.upload(user, contents)

        self.assertEqual(response.status_code, 200, response.text)
        body = response.json()
        self.assertTrue(body["is_valid"])
        self.assertEqual(
            (body["created_institutions"], body["created_accounts"], body["created_transactions"]),
            (1, 1, 2),
        )
        state = self.client.get("/fin-accounts/state", headers=headers(user)).json()
        transactions = state["institutions"][0]["accounts"][0]["transactions"]
        by_id = {txn["user_tx_id"]: txn for txn in transactions}
        self.assertEqual(set(by_id), {"TX00000001", "MYBK123400000001"})
        self.assertEqual(by_id["TX00000001"]["category_id"], self.category_id("Coffee"))
        self.assertEqual(by_id["MYBK123400000001"]["category_id"], self.category_id("Income"))

    def test_invalid_files_are_reported(self) -> None:
        user = self.signup()
        self.assertEqual(self.upload(user, CSV_HEADER, filename="transactions.txt").status_code, 400)

        missing = self.upload(user, "Date,Amount,Memo\n2024-01-01,5,x\n").json()
        self.assertFalse(missing["is_valid"])
        self.assertIn("TransactionId", missing["missing_columns"])
        self.assertEqual(missing["mappable_columns"], ["Memo"])

        bad_rows = self.upload(
            user, CSV_HEADER + "\nTX00000001,someday,5,Shop,,Bank,BNK,Card,credit,5678,\n"
        ).json()
        self.assertEqual(bad_rows["invalid_rows"], [2])
        self.assertEqual(bad_rows["created_transactions"], 0)

        bad_ids = self.upload(
            user,
            "\n".join(
                [
                    CSV_HEADER,
                    "TX00000001,2024-01-05,5,Shop,,Bank,BNK,Card,credit,5678,",
                    "tx-lower,2024-01-06,5,Shop,,Bank,BNK,Card,credit,5678,",
                ]
            ),
        )
        self.assertEqual(bad_ids.status_code, 200)
        self.assertFalse(bad_ids.json()["is_valid"])
        self.assertEqual(bad_ids.json()["invalid_rows"], [3])
        self.assertFalse(bad_ids.json()["rows"][1]["is_tx_id_valid"])
        self.assertEqual(bad_ids.json()["created_transactions"], 0)

    def test_mapped_import(self) -> None:
        user = self.signup()
        contents = "\n".join(
            [
                "Ref,Posted,Amt,Merchant,Category,BankName,BankSymbol,AccountName,AccountType,Last4",
                "REF0000001,2024-03-01,20,Shop,Shopping,Bank,BNK,Card,credit,5678",
            ]
        )
        mapping = json.dumps({"TransactionId": "Ref", "Date": "Posted", "Amount": "Amt", "AccountMask": "Last4"})

        response = self.upload(user, contents, mapping=mapping)

        self.assertEqual(response.status_code, 200, response.text)
        self.assertEqual(response.json()["created_transactions"], 1)
        self.assertEqual(self.upload(user, contents, mapping="not json").status_code, 400)
        self.assertEqual(self.upload(user, contents, mapping=json.dumps({"Memo": "Ref"})).status_code, 400)


class BudgetTransactionTests(ApiTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.user = self.signup()
        self.budget_id = self.create_budget(self.user)
        self.account_id = self.create_manual_account(self.user)
        self.coffee = self.add_transaction(self.user, self.account_id)
        self.add_transaction(
            self.user,
            self.account_id,
            amount="80",
            merchant_name="Corner Grocer",
            category_id=self.category_id("Groceries"),
        )

    def test_linking_attaches_existing_transactions_and_runs_rules(self) -> None:
        rule = self.client.post(
            f"/budgets/{self.budget_id}/rules",
            json={
                "name": "Coffee",
                "conditions": {"merchantName": {"enabled": True, "matchType": "contains", "value": "bottle"}},
                "actions": {
                    "setCategory": {"enabled": True, "value": self.category_id("Coffee")},
                    "addTags": {"enabled": True, "value": ["caffeine"]},
                },
            },
            headers=headers(self.user),
        )
        self.assertEqual(rule.status_code, 200, rule.text)

        budget_account_id = self.link_manual_account(self.user, self.budget_id, self.account_id)
        relink = self.client.post(
            f"/budgets/{self.budget_id}/accounts",
            json={"manual_account_id": self.account_id},
            headers=headers(self.user),
        )
        self.assertEqual(relink.status_code, 409)

        transactions = self.client.get(
            f"/budgets/{self.budget_id}/transactions", headers=headers(self.user)
        ).json()
        self.assertEqual(len(transactions), 2)
        coffee = next(txn for txn in transactions if txn["transaction_id"] == self.coffee["id"])
        self.assertEqual(coffee["category_name"], "Coffee")
        self.assertEqual(coffee["category_group"], "Food & Drink")
        self.assertEqual(coffee["tags"], ["caffeine"])
        self.assertEqual(coffee["budget_account_id"], budget_account_id)
        self.assertEqual(coffee["account_name"], "Checking")

        searched = self.client.get(
            f"/budgets/{self.budget_id}/transactions", params={"search": "grocer"}, headers=headers(self.user)
        ).json()
        self.assertEqual([txn["merchant_name"] for txn in searched], ["Corner Grocer"])

        later = self.add_transaction(self.user, self.account_id, merchant_name="Blue Bottle Kiosk")
        transactions = self.client.get(
            f"/budgets/{self.budget_id}/transactions", headers=headers(self.user)
        ).json()
        attached = next(txn for txn in transactions if txn["transaction_id"] == later["id"])
        self.assertEqual(attached["category_name"], "Coffee")

        unlinked = self.client.delete(
            f"/budgets/{self.budget_id}/accounts/{budget_account_id}", headers=headers(self.user)
        )
        self.assertEqual(unlinked.json(), {"status": "deleted"})
        self.assertEqual(
            self.client.get(f"/budgets/{self.budget_id}/transactions", headers=headers(self.user)).json(), []
        )

    def test_updates_override_and_teach_suggestions(self) -> None:
        self.link_manual_account(self.user, self.budget_id, self.account_id)
        dining = self.category_id("Dining Out")

        updated = self.client.put(
            f"/budgets/{self.budget_id}/transactions/{self.coffee['id']}",
            json={"category_id": dining, "notes": "team breakfast", "tags": ["work", "Work"]},
            headers=headers(self.user),
        )

        self.assertEqual(updated.status_code, 200, updated.text)
        body = updated.json()
        self.assertEqual(body["category_name"], "Dining Out")
        self.assertEqual(body["notes"], "team breakfast")
        self.assertEqual(body["tags"], ["work"])

        suggestion = self.client.get(
            f"/budgets/{self.budget_id}/transactions/suggest-category",
            params={"merchant": "blue bottle coffee"},
            headers=headers(self.user),
        ).json()
        self.assertEqual(suggestion, {"category_id": dining, "category_name": "Dining Out", "confidence": 0.95})

        tags = self.client.get(f"/budgets/{self.budget_id}/tags", headers=headers(self.user)).json()
        self.assertEqual([tag["name"] for tag in tags], ["work"])

        empty = self.client.put(
            f"/budgets/{self.budget_id}/transactions/{self.coffee['id']}", json={}, headers=headers(self.user)
        )
        self.assertEqual(empty.status_code, 400)
        missing = self.client.put(
            f"/budgets/{self.budget_id}/transactions/9999", json={"notes": "x"}, headers=headers(self.user)
        )
        self.assertEqual(missing.status_code, 404)


class RuleTests(ApiTestCase):
    def rule_payload(self, name: str, **overrides) -> dict:
        payload = {
            "name": name,
            "conditions": {"merchantName": {"enabled": True, "matchType": "contains", "value": "bottle"}},
            "actions": {"setNote": {"enabled": True, "value": name}},
        }
        payload.update(overrides)
        return payload

    def test_rule_order_follows_creation_and_reorders(self) -> None:
        user = self.signup()
        budget_id = self.create_budget(user)
        url = f"/budgets/{budget_id}/rules"
        first = self.client.post(url, json=self.rule_payload("first"), headers=headers(user))
        second = self.client.post(url, json=self.rule_payload("second"), headers=headers(user))
        first_id, second_id = first.json()["id"], second.json()["id"]

        budget = self.client.get(f"/budgets/{budget_id}", headers=headers(user)).json()
        self.assertEqual(budget["rule_order"], [first_id, second_id])

        reordered = self.client.patch(
            f"/budgets/{budget_id}/rules", json={"rule_order": [second_id, first_id]}, headers=headers(user)
        )
        self.assertEqual(reordered.json()["rule_order"], [second_id, first_id])
        listed = self.client.get(f"/budgets/{budget_id}/rules", headers=headers(user)).json()
        self.assertEqual([rule["name"] for rule in listed], ["second", "first"])

        duplicates = self.client.patch(
            f"/budgets/{budget_id}/rules", json={"rule_order": [first_id, first_id]}, headers=headers(user)
        )
        self.assertEqual(duplicates.status_code, 400)
        unknown = self.client.patch(
            f"/budgets/{budget_id}/rules", json={"rule_order": [first_id, 9999]}, headers=headers(user)
        )
        self.assertEqual(unknown.status_code, 400)

        deleted = self.client.delete(f"/budgets/{budget_id}/rules/{second_id}", headers=headers(user))
        self.assertEqual(deleted.json(), {"status": "deleted"})
        budget = self.client.get(f"/budgets/{budget_id}", headers=headers(user)).json()
        self.assertEqual(budget["rule_order"], [first_id])

    def test_rules_validate_references(self) -> None:
        user = self.signup()
        budget_id = self.create_budget(user)

        invalid = self.client.post(
            f"/budgets/{budget_id}/rules",
            json=self.rule_payload("bad", actions={"setNote": {"enabled": False}}),
            headers=headers(user),
        )
        self.assertEqual(invalid.status_code, 400)
        unknown_category = self.client.post(
            f"/budgets/{budget_id}/rules",
            json=self.rule_payload("bad", actions={"setCategory": {"enabled": True, "value": 99999}}),
            headers=headers(user),
        )
        self.assertEqual(unknown_category.status_code, 404)
        foreign_account = self.client.post(
            f"/budgets/{budget_id}/rules",
            json=self.rule_payload("bad", conditions={"account": {"enabled": True, "value": 4242}}),
            headers=headers(user),
        )
        self.assertEqual(foreign_account.status_code, 400)

    def test_rule_can_apply_to_existing_transactions(self) -> None:
        user = self.signup()
        budget_id = self.create_budget(user)
        account_id = self.create_manual_account(user)
        self.add_transaction(user, account_id)
        self.add_transaction(user, account_id, merchant_name="Hardware Store")
        self.link_manual_account(user, budget_id, account_id)

        created = self.client.post(
            f"/budgets/{budget_id}/rules",
            json=self.rule_payload("coffee", is_applied_to_all_transactions=True),
            headers=headers(user),
        )

        self.assertEqual(created.json()["applied_count"], 1)
        transactions = self.client.get(f"/budgets/{budget_id}/transactions", headers=headers(user)).json()
        self.assertEqual(sorted(txn["notes"] or "" for txn in transactions), ["", "coffee"])

        updated = self.client.put(
            f"/budgets/{budget_id}/rules/{created.json()['id']}",
            json=self.rule_payload("renamed"),
            headers=headers(user),
        )
        self.assertEqual(updated.json()["name"], "renamed")
        missing = self.client.put(
            f"/budgets/{budget_id}/rules/9999", json=self.rule_payload("x"), headers=headers(user)
        )
        self.assertEqual(missing.status_code, 404)


class CategoryTests(ApiTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.user = self.signup()
        self.budget_id = self.create_budget(self.user)

    def test_built_in_groups_are_listed(self) -> None:
        groups = self.client.get(f"/budgets/{self.budget_id}/categories", headers=headers(self.user)).json()
        by_name = {group["name"]: group for group in groups}
        self.assertTrue(by_name["Food & Drink"]["is_built_in"])
        self.assertIn("Coffee", [category["name"] for category in by_name["Food & Drink"]["categories"]])
        self.assertFalse(by_name["Other"]["is_enabled"])

    def test_custom_groups(self) -> None:
        created = self.client.post(
            f"/budgets/{self.budget_id}/category-groups",
            json={"name": "Side Hustle", "description": "gigs"},
            headers=headers(self.user),
        )
        self.assertEqual(created.status_code, 200)
        self.assertFalse(created.json()["is_built_in"])

        reserved = self.client.post(
            f"/budgets/{self.budget_id}/category-groups", json={"name": "income"}, headers=headers(self.user)
        )
        self.assertEqual(reserved.status_code, 409)
        duplicate = self.client.post(
            f"/budgets/{self.budget_id}/category-groups", json={"name": "side hustle"}, headers=headers(self.user)
        )
        self.assertEqual(duplicate.status_code, 409)

        updated = self.client.put(
            f"/budgets/{self.budget_id}/category-groups/{created.json()['id']}",
            json={"description": "weekend gigs"},
            headers=headers(self.user),
        )
        self.assertEqual(updated.json()["description"], "weekend gigs")
        built_in = self.client.put(
            f"/budgets/{self.budget_id}/category-groups/{self.group_id('Income')}",
            json={"description": "x"},
            headers=headers(self.user),
        )
        self.assertEqual(built_in.status_code, 400)

    def test_custom_and_composite_categories(self) -> None:
        group_id = self.client.post(
            f"/budgets/{self.budget_id}/category-groups", json={"name": "Extras"}, headers=headers(self.user)
        ).json()["id"]

        snacks = self.client.post(
            f"/budgets/{self.budget_id}/categories",
            json={"name": "snacks", "group_id": group_id},
            headers=headers(self.user),
        )
        self.assertEqual(snacks.json()["name"], "Snacks")
        clash = self.client.post(
            f"/budgets/{self.budget_id}/categories",
            json={"name": "coffee", "group_id": group_id},
            headers=headers(self.user),
        )
        self.assertEqual(clash.status_code, 409)
        into_built_in = self.client.post(
            f"/budgets/{self.budget_id}/categories",
            json={"name": "Tea", "group_id": self.group_id("Food & Drink")},
            headers=headers(self.user),
        )
        self.assertEqual(into_built_in.status_code, 400)

        composite = self.client.post(
            f"/budgets/{self.budget_id}/categories",
            json={
                "name": "Meal kit",
                "group_id": group_id,
                "composite_data": [
                    {"categoryName": "Groceries", "weight": 70},
                    {"categoryName": "snacks", "weight": 30},
                ],
            },
            headers=headers(self.user),
        )
        self.assertEqual(composite.status_code, 200, composite.text)
        self.assertTrue(composite.json()["is_composite"])
        self.assertEqual(composite.json()["composite_data"][1], {"categoryName": "Snacks", "weight": 30.0})

        bad_weights = self.client.post(
            f"/budgets/{self.budget_id}/categories",
            json={
                "name": "Broken kit",
                "group_id": group_id,
                "composite_data": [{"categoryName": "Groceries", "weight": 70}],
            },
            headers=headers(self.user),
        )
        self.assertEqual(bad_weights.status_code, 400)

        in_composite = self.client.delete(
            f"/budgets/{self.budget_id}/categories/{snacks.json()['id']}", headers=headers(self.user)
        )
        self.assertEqual(in_composite.status_code, 409)
        built_in = self.client.delete(
            f"/budgets/{self.budget_id}/categories/{self.category_id('Coffee')}", headers=headers(self.user)
        )
        self.assertEqual(built_in.status_code, 400)
        deleted = self.client.delete(
            f"/budgets/{self.budget_id}/categories/{composite.json()['id']}", headers=headers(self.user)
        )
        self.assertEqual(deleted.json(), {"status": "deleted"})


class SpendingTrackingTests(ApiTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.user = self.signup()
        self.budget_id = self.create_budget(self.user)
        account_id = self.create_manual_account(self.user)
        self.add_transaction(self.user, account_id, category_id=self.category_id("Coffee"))
        self.link_manual_account(self.user, self.budget_id, account_id)
        self.month = f"{self.today:%Y-%m}"

    def test_recalculate_then_read_and_set_targets(self) -> None:
        url = f"/budgets/{self.budget_id}/spending-tracking"
        self.assertEqual(self.client.get(url, headers=headers(self.user)).json(), {})

        first = self.client.post(f"{url}/recalculate", json={"months": [self.month]}, headers=headers(self.user))
        self.assertEqual(first.status_code, 200, first.text)
        self.assertEqual(first.json()["recalculated"], [self.month])

        month = self.client.get(url, params={"month": self.month}, headers=headers(self.user)).json()
        food = month[self.month]["Food & Drink"]
        self.assertEqual(food["spendingActual"], 12.5)
        self.assertEqual(food["categories"][0]["categoryName"], "Coffee")

        by_date = self.client.get(url, params={"month": self.today.isoformat()}, headers=headers(self.user))
        self.assertEqual(by_date.status_code, 200)
        for month, status in (("1999-01", 404), ("01-2024", 400)):
            response = self.client.get(url, params={"month": month}, headers=headers(self.user))
            self.assertEqual(response.status_code, status)

        second = self.client.post(
            f"{url}/recalculate", json={"months": [self.month, "2000-01"]}, headers=headers(self.user)
        ).json()
        self.assertEqual(second["skipped"], ["2000-01"])
        self.assertEqual(second["recalculated"], [self.month])
        invalid = self.client.post(f"{url}/recalculate", json={"months": ["2024-13"]}, headers=headers(self.user))
        self.assertEqual(invalid.status_code, 400)

        targets = self.client.put(
            url,
            json={
                "date": self.today.isoformat(),
                "category_spending": {
                    "Food & Drink": {
                        "target": 300,
                        "targetSource": "category",
                        "categories": [{"categoryName": "Coffee", "target": 300}],
                    }
                },
            },
            headers=headers(self.user),
        )
        self.assertEqual(targets.status_code, 200, targets.text)
        food = targets.json()[self.month]["Food & Drink"]
        self.assertEqual(food["spendingTarget"], 300.0)
        self.assertEqual(food["spendingActual"], 12.5)

        unknown = self.client.put(
            url,
            json={"date": self.month, "category_spending": {"Travel Fund": {"target": 10}}},
            headers=headers(self.user),
        )
        self.assertEqual(unknown.status_code, 404)

    def test_category_change_refreshes_tracking(self) -> None:
        url = f"/budgets/{self.budget_id}/spending-tracking"
        self.client.post(f"{url}/recalculate", json={"months": [self.month]}, headers=headers(self.user))
        transaction_id = self.client.get(
            f"/budgets/{self.budget_id}/transactions", headers=headers(self.user)
        ).json()[0]["transaction_id"]

        self.client.put(
            f"/budgets/{self.budget_id}/transactions/{transaction_id}",
            json={"category_id": self.category_id("Shopping")},
            headers=headers(self.user),
        )

        month = self.client.get(url, params={"month": self.month}, headers=headers(self.user)).json()[self.month]
        self.assertEqual(month["Retail & Goods"]["spendingActual"], 12.5)
        self.assertEqual(month["Food & Drink"]["spendingActual"], 0.0)

        cleared = self.client.put(
            f"/budgets/{self.budget_id}/transactions/{transaction_id}",
            json={"category_id": None},
            headers=headers(self.user),
        )

        self.assertEqual(cleared.json()["category_id"], self.category_id("Coffee"))
        month = self.client.get(url, params={"month": self.month}, headers=headers(self.user)).json()[self.month]
        self.assertEqual(month["Retail & Goods"]["spendingActual"], 0.0)
        self.assertEqual(month["Food & Drink"]["spendingActual"], 12.5)


class GoalTests(ApiTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.user = self.signup()
        self.budget_id = self.create_budget(self.user)
        account_id = self.create_manual_account(self.user, balance="500")
        self.budget_account_id = self.link_manual_account(self.user, self.budget_id, account_id)
        self.target = self.today + timedelta(days=120)

    def goal_payload(self, **overrides) -> dict:
        payload = {
            "type": "savings",
            "name": "Emergency fund",
            "amount": "1200",
            "target_date": self.target.isoformat(),
            "budget_account_id": self.budget_account_id,
        }
        payload.update(overrides)
        return payload

    def test_goal_lifecycle(self) -> None:
        url = f"/budgets/{self.budget_id}/goals"
        created = self.client.post(url, json=self.goal_payload(), headers=headers(self.user))

        self.assertEqual(created.status_code, 200, created.text)
        goal = created.json()
        tracking = goal["spending_tracking"]
        first_month = sorted(tracking)[0]
        self.assertEqual(tracking[first_month]["startingBalance"], 500.0)
        total = sum(
            allocation["amountTarget"]
            for month in tracking.values()
            for allocation in month["allocations"].values()
        )
        self.assertAlmostEqual(total, 1200.0)

        listed = self.client.get(url, headers=headers(self.user)).json()
        self.assertEqual([item["id"] for item in listed], [goal["id"]])
        detail = self.client.get(f"/budgets/{self.budget_id}", headers=headers(self.user)).json()
        self.assertEqual(len(detail["goals"]), 1)

        updated = self.client.put(
            f"{url}/{goal['id']}", json=self.goal_payload(name="Rainy day"), headers=headers(self.user)
        )
        self.assertEqual(updated.json()["name"], "Rainy day")

        deleted = self.client.delete(f"{url}/{goal['id']}", headers=headers(self.user))
        self.assertEqual(deleted.json(), {"status": "deleted"})
        self.assertEqual(self.client.delete(f"{url}/{goal['id']}", headers=headers(self.user)).status_code, 404)

    def test_goal_validation(self) -> None:
        url = f"/budgets/{self.budget_id}/goals"
        cases = [
            self.goal_payload(type="vacation"),
            self.goal_payload(amount="0"),
            self.goal_payload(target_date=self.today.isoformat()),
            self.goal_payload(type="debt", debt_type="card"),
        ]
        for payload in cases:
            with self.subTest(payload=payload):
                self.assertEqual(self.client.post(url, json=payload, headers=headers(self.user)).status_code, 400)

        debt = self.client.post(
            url,
            json=self.goal_payload(
                type="debt", debt_type="card", debt_payment_component="Principal", debt_interest_rate="19.99"
            ),
            headers=headers(self.user),
        )
        self.assertEqual(debt.json()["debt_payment_component"], "principal")

        foreign = self.client.post(url, json=self.goal_payload(budget_account_id=4242), headers=headers(self.user))
        self.assertEqual(foreign.status_code, 409)


class RecurringTests(ApiTestCase):
    def test_recurring_listing_and_overrides(self) -> None:
        user = self.signup()
        budget_id = self.create_budget(user)
        account_id = self.create_manual_account(user)
        self.link_manual_account(user, budget_id, account_id)
        last_date = self.today - timedelta(days=3)
        with main.engine.begin() as conn:
            recurring_id = conn.execute(
                insert(main.recurring_transactions)
                .values(
                    manual_account_id=account_id,
                    frequency="weekly",
                    last_date=last_date,
                    average_amount=Decimal("45.00"),
                    merchant_name="Gym",
                    description="Gym membership",
                    category_id=self.category_id("Gyms & Fitness"),
                )
                .returning(main.recurring_transactions.c.id)
            ).scalar_one()
            conn.execute(
                insert(main.budget_recurring_transactions).values(
                    budget_id=budget_id, recurring_id=recurring_id, tag_ids=[]
                )
            )

        url = f"/budgets/{budget_id}/transactions-recurring"
        until = self.today + timedelta(days=14)
        listed = self.client.get(url, params={"until": until.isoformat()}, headers=headers(user))

        self.assertEqual(listed.status_code, 200, listed.text)
        stream = listed.json()[0]
        self.assertEqual(stream["frequency"], "weekly")
        self.assertEqual(stream["category_id"], self.category_id("Gyms & Fitness"))
        self.assertEqual(
            [entry["date"] for entry in stream["projected"]],
            [(last_date + timedelta(days=7 * n)).isoformat() for n in (1, 2)],
        )

        past = self.client.get(
            url, params={"until": (self.today - timedelta(days=1)).isoformat()}, headers=headers(user)
        )
        self.assertEqual(past.status_code, 400)

        updated = self.client.put(
            f"{url}/{recurring_id}",
            json={
                "notes": "annual plan",
                "tags": ["health"],
                "category_id": self.category_id("Other Personal Care"),
            },
            headers=headers(user),
        )
        self.assertEqual(updated.status_code, 200, updated.text)
        self.assertEqual(updated.json()["notes"], "annual plan")
        self.assertEqual(updated.json()["tags"], ["health"])
        self.assertEqual(updated.json()["category_id"], self.category_id("Other Personal Care"))

        self.assertEqual(self.client.put(f"{url}/{recurring_id}", json={}, headers=headers(user)).status_code, 400)
        self.assertEqual(
            self.client.put(f"{url}/9999", json={"notes": "x"}, headers=headers(user)).status_code, 404
        )


class OnboardingTests(ApiTestCase):
    def step(self, budget_id: int, step: str):
        return self.client.put(
            f"/budgets/{budget_id}/onboarding/step", json={"step": step}, headers=headers(self.user)
        )

    def setUp(self) -> None:
        super().setUp()
        self.user = self.signup()
        self.budget_id = self.create_budget(self.user)

    def test_full_onboarding_flow(self) -> None:
        state = self.client.get(f"/budgets/{self.budget_id}/onboarding", headers=headers(self.user)).json()
        self.assertEqual(state["step"], "start")
        self.assertFalse(state["is_profile_complete"])

        self.assertEqual(self.step(self.budget_id, "manual").json()["step"], "manual")
        self.assertEqual(self.step(self.budget_id, "profile_goals").status_code, 409)
        self.assertEqual(self.step(self.budget_id, "nowhere").status_code, 400)

        account_id = self.create_manual_account(self.user)
        self.add_transaction(
            self.user, account_id, amount="-3000", merchant_name="Payroll", category_id=self.category_id("Income")
        )
        self.add_transaction(
            self.user, account_id, amount="400", merchant_name="Mall", category_id=self.category_id("Shopping")
        )
        self.link_manual_account(self.user, self.budget_id, account_id)
        self.assertEqual(self.step(self.budget_id, "profile_goals").status_code, 200)
        self.assertEqual(self.step(self.budget_id, "manual").status_code, 409)
        self.assertEqual(self.step(self.budget_id, "analyze_spending").status_code, 409)

        personal = self.client.put(
            "/onboarding/profile/personal", json={"full_name": "Sam Lee", "age": 31}, headers=headers(self.user)
        )
        self.assertEqual(personal.status_code, 200)
        self.client.put(
            "/onboarding/profile/fin",
            json={"annual_income": "72000", "savings": "5000"},
            headers=headers(self.user),
        )
        goals = self.client.put(
            "/onboarding/profile/goals",
            json={"primary_financial_goals": ["Emergency fund", " "], "goal_timeline": "1 year"},
            headers=headers(self.user),
        )
        self.assertEqual(goals.json()["primary_financial_goals"], ["Emergency fund"])
        self.assertEqual(goals.json()["full_name"], "Sam Lee")

        early = self.client.post(f"/budgets/{self.budget_id}/onboarding/analysis", headers=headers(self.user))
        self.assertEqual(early.status_code, 409)
        self.assertEqual(self.step(self.budget_id, "analyze_spending").status_code, 200)

        goal = self.client.post(
            f"/budgets/{self.budget_id}/goals",
            json={
                "type": "savings",
                "name": "Trip",
                "amount": "600",
                "target_date": (self.today + timedelta(days=100)).isoformat(),
            },
            headers=headers(self.user),
        ).json()

        analysis = self.client.post(f"/budgets/{self.budget_id}/onboarding/analysis", headers=headers(self.user))
        self.assertEqual(analysis.status_code, 200, analysis.text)
        body = analysis.json()
        self.assertEqual(body["step"], "budget_setup")
        self.assertEqual(body["summary"]["totalIncome"], 3000.0)
        self.assertEqual(body["summary"]["totalDiscretionarySpending"], 400.0)
        self.assertEqual(set(body["spending_recommendations"]), {"balanced", "conservative", "relaxed"})
        self.assertIn(str(goal["id"]), body["goal_spending_recommendations"]["balanced"])

        stored_goal = self.client.get(f"/budgets/{self.budget_id}/goals", headers=headers(self.user)).json()[0]
        self.assertEqual(set(stored_goal["spending_recommendations"]), {"balanced", "conservative", "relaxed"})
        tracking = self.client.get(
            f"/budgets/{self.budget_id}/spending-tracking", headers=headers(self.user)
        ).json()
        self.assertIn(f"{self.today:%Y-%m}", tracking)

        too_early = self.client.put(f"/budgets/{self.budget_id}/onboarding/end", headers=headers(self.user))
        self.assertEqual(too_early.status_code, 409)
        self.assertEqual(self.step(self.budget_id, "invite_members").status_code, 200)
        ended = self.client.put(f"/budgets/{self.budget_id}/onboarding/end", headers=headers(self.user))
        self.assertEqual(ended.json()["current_onboarding_step"], "end")

    def test_failed_analysis_rolls_back_step(self) -> None:
        with main.engine.begin() as conn:
            main.touch_budget(conn, self.budget_id, current_onboarding_step="analyze_spending")

        with patch.object(main, "build_recommendations", side_effect=RuntimeError("boom")):
            with self.assertRaises(RuntimeError):
                self.client.post(f"/budgets/{self.budget_id}/onboarding/analysis", headers=headers(self.user))

        state = self.client.get(f"/budgets/{self.budget_id}/onboarding", headers=headers(self.user)).json()
        self.assertEqual(state["step"], "analyze_spending")


def plaid_transaction(transaction_id: str, day: date, **overrides) -> dict:
    raw = {
        "transaction_id": transaction_id,
        "account_id": "acc-1",
        "date": day.isoformat(),
        "amount": 4.5,
        "merchant_name": "Blue Bottle",
        "name": "BLUE BOTTLE #12",
        "iso_currency_code": "USD",
        "pending": False,
        "personal_finance_category": {"detailed": "FOOD_AND_DRINK_COFFEE", "confidence_level": "HIGH"},
    }
    raw.update(overrides)
    return raw


class PlaidTests(ApiTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.user = self.signup()
        self.plaid = MagicMock()
        patcher = patch.object(main, "PLAID_CLIENT", self.plaid)
        patcher.start()
        self.addCleanup(patcher.stop)
        self.plaid.item_public_token_exchange.return_value = {"access_token": "access-1", "item_id": "item-1"}
        self.plaid.item_get.return_value = {"item": {"institution_id": "ins_1"}}
        self.plaid.institution_get_by_id.return_value = {"institution": {"name": "First Bank"}}
        self.plaid.accounts_get.return_value = {
            "accounts": [
                {
                    "account_id": "acc-1",
                    "name": "Everyday Checking",
                    "type": "depository",
                    "subtype": "checking",
                    "mask": "0000",
                    "balances": {"available": 100, "current": 120, "limit": None, "iso_currency_code": "USD"},
                }
            ]
        }
        self.plaid.transactions_recurring_get.return_value = {"outflow_streams": [], "inflow_streams": []}

    def link_item(self) -> dict:
        response = self.client.post("/plaid/items", json={"public_token": "public-1"}, headers=headers(self.user))
        self.assertEqual(response.status_code, 200, response.text)
        return response.json()

    def test_link_token(self) -> None:
        self.plaid.link_token_create.return_value = {"link_token": "link-1", "expiration": "2030-01-01T00:00:00Z"}
        response = self.client.post("/plaid/link-token", headers=headers(self.user))
        self.assertEqual(response.json(), {"link_token": "link-1", "expiration": "2030-01-01T00:00:00Z"})
        self.plaid.link_token_create.assert_called_once_with(str(self.user))

        self.plaid.link_token_create.side_effect = PlaidUnavailable("Plaid API unavailable")
        self.assertEqual(self.client.post("/plaid/link-token", headers=headers(self.user)).status_code, 502)

    def test_item_exchange_and_removal(self) -> None:
        item = self.link_item()
        self.assertEqual(item["institution_name"], "First Bank")
        self.assertEqual(item["accounts"][0]["plaid_account_id"], "acc-1")
        self.assertEqual(Decimal(item["accounts"][0]["balance_current"]), Decimal("120"))

        state = self.client.get("/fin-accounts/state", headers=headers(self.user)).json()
        self.assertEqual(state["plaid_items"][0]["accounts"][0]["name"], "Everyday Checking")

        again = self.client.post("/plaid/items", json={"public_token": "public-1"}, headers=headers(self.user))
        self.assertEqual(again.status_code, 409)

        deleted = self.client.delete(f"/plaid/items/{item['id']}", headers=headers(self.user))
        self.assertEqual(deleted.json(), {"status": "deleted"})
        self.plaid.item_remove.assert_called_once_with("access-1")
        again = self.client.delete(f"/plaid/items/{item['id']}", headers=headers(self.user))
        self.assertEqual(again.status_code, 404)

    def test_sync_stores_transactions_and_rewires_pending(self) -> None:
        item = self.link_item()
        budget_id = self.create_budget(self.user)
        self.client.post(
            f"/budgets/{budget_id}/accounts",
            json={"plaid_account_id": item["accounts"][0]["id"]},
            headers=headers(self.user),
        )
        self.plaid.transactions_sync.side_effect = [
            {
                "added": [
                    plaid_transaction("tx-pending-1", self.today, pending=True),
                    plaid_transaction("tx-nocat", self.today, personal_finance_category=None),
                ],
                "modified": [],
                "removed": [],
                "has_more": False,
                "next_cursor": "cur-1",
            },
            {
                "added": [
                    plaid_transaction("tx-posted-1", self.today, pending_transaction_id="tx-pending-1")
                ],
                "modified": [],
                "removed": [{"transaction_id": "tx-pending-1"}],
                "has_more": False,
                "next_cursor": "cur-2",
            },
        ]
        self.plaid.transactions_recurring_get.return_value = {
            "outflow_streams": [
                {
                    "stream_id": "stream-1",
                    "account_id": "acc-1",
                    "frequency": "MONTHLY",
                    "first_date": (self.today - timedelta(days=60)).isoformat(),
                    "last_date": (self.today - timedelta(days=5)).isoformat(),
                    "average_amount": {"amount": 15.99},
                    "merchant_name": "Netflix",
                    "description": "NETFLIX.COM",
                    "is_active": True,
                    "personal_finance_category": {"detailed": "ENTERTAINMENT_TV_AND_MOVIES"},
                }
            ],
            "inflow_streams": [],
        }
        url = f"/budgets/{budget_id}/plaid/sync"

        first = self.client.post(url, headers=headers(self.user))

        self.assertEqual(first.status_code, 200, first.text)
        self.assertEqual(first.json(), {"new": 1, "modified": 0, "removed": 0, "unlinked": 0, "skipped": 1})
        transactions = self.client.get(f"/budgets/{budget_id}/transactions", headers=headers(self.user)).json()
        self.assertEqual(len(transactions), 1)
        self.assertEqual(transactions[0]["category_name"], "Coffee")
        self.assertEqual(transactions[0]["tx_status"], "pending")
        self.assertTrue(transactions[0]["user_tx_id"].startswith(f"P{self.today:%Y%m%d}"))

        recurring = self.client.get(
            f"/budgets/{budget_id}/transactions-recurring", headers=headers(self.user)
        ).json()
        self.assertEqual(recurring[0]["frequency"], "monthly")
        self.assertEqual(recurring[0]["category_id"], self.category_id("TV & Movies"))

        second = self.client.post(url, headers=headers(self.user))

        self.assertEqual(second.json(), {"new": 0, "modified": 1, "removed": 0, "unlinked": 0, "skipped": 0})
        self.assertEqual(
            self.plaid.transactions_sync.call_args_list, [call("access-1", None), call("access-1", "cur-1")]
        )
        transactions = self.client.get(f"/budgets/{budget_id}/transactions", headers=headers(self.user)).json()
        self.assertEqual(len(transactions), 1)
        self.assertEqual(transactions[0]["tx_status"], "posted")

    def linked_budget(self) -> int:
        item = self.link_item()
        budget_id = self.create_budget(self.user)
        self.client.post(
            f"/budgets/{budget_id}/accounts",
            json={"plaid_account_id": item["accounts"][0]["id"]},
            headers=headers(self.user),
        )
        return budget_id

    def test_uncategorized_posted_version_removes_pending_row(self) -> None:
        budget_id = self.linked_budget()
        self.plaid.transactions_sync.side_effect = [
            {
                "added": [plaid_transaction("tx-pending-1", self.today, pending=True)],
                "has_more": False,
                "next_cursor": "cur-1",
            },
            {
                "added": [
                    plaid_transaction(
                        "tx-posted-1",
                        self.today,
                        pending_transaction_id="tx-pending-1",
                        personal_finance_category=None,
                    )
                ],
                "removed": [{"transaction_id": "tx-pending-1"}],
                "has_more": False,
                "next_cursor": "cur-2",
            },
        ]
        url = f"/budgets/{budget_id}/plaid/sync"
        self.client.post(url, headers=headers(self.user))

        second = self.client.post(url, headers=headers(self.user))

        self.assertEqual(second.json(), {"new": 0, "modified": 0, "removed": 1, "unlinked": 0, "skipped": 1})
        with main.engine.begin() as conn:
            stored = conn.execute(select(main.fin_transactions.c.plaid_tx_id)).scalars().all()
        self.assertEqual(stored, [])
        transactions = self.client.get(f"/budgets/{budget_id}/transactions", headers=headers(self.user)).json()
        self.assertEqual(transactions, [])

    def test_modified_date_refreshes_previous_month(self) -> None:
        budget_id = self.linked_budget()
        last_month_day = self.today.replace(day=1) - timedelta(days=1)
        self.plaid.transactions_sync.side_effect = [
            {
                "added": [plaid_transaction("tx-1", last_month_day)],
                "has_more": False,
                "next_cursor": "cur-1",
            },
            {
                "modified": [plaid_transaction("tx-1", self.today)],
                "has_more": False,
                "next_cursor": "cur-2",
            },
        ]
        url = f"/budgets/{budget_id}/plaid/sync"
        self.client.post(url, headers=headers(self.user))
        tracking_url = f"/budgets/{budget_id}/spending-tracking"
        self.client.post(
            f"{tracking_url}/recalculate", json={"months": [f"{self.today:%Y-%m}"]}, headers=headers(self.user)
        )

        second = self.client.post(url, headers=headers(self.user))

        self.assertEqual(second.json()["modified"], 1)
        tracking = self.client.get(tracking_url, headers=headers(self.user)).json()
        self.assertEqual(tracking[f"{last_month_day:%Y-%m}"]["Food & Drink"]["spendingActual"], 0)
        self.assertEqual(tracking[f"{self.today:%Y-%m}"]["Food & Drink"]["spendingActual"], 4.5)

    def test_sync_failures(self) -> None:
        item = self.link_item()
        budget_id = self.create_budget(self.user)
        self.client.post(
            f"/budgets/{budget_id}/accounts",
            json={"plaid_account_id": item["accounts"][0]["id"]},
            headers=headers(self.user),
        )
        url = f"/budgets/{budget_id}/plaid/sync"

        self.plaid.transactions_sync.side_effect = PlaidApiError("login required", error_code="ITEM_LOGIN_REQUIRED")
        self.assertEqual(self.client.post(url, headers=headers(self.user)).status_code, 502)

        self.plaid.transactions_sync.side_effect = None
        self.plaid.transactions_sync.return_value = {"added": [], "has_more": False, "next_cursor": "cur-9"}
        self.plaid.transactions_recurring_get.side_effect = PlaidApiError("not ready")
        response = self.client.post(url, headers=headers(self.user))
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["new"], 0)


if __name__ == "__main__":
    unittest.main()
