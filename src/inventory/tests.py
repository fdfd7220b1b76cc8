import re
import threading
from datetime import date, timedelta
from io import StringIO
from unittest import mock

from django.contrib.auth.models import Group, Permission, User
from django.core.exceptions import ValidationError
from django.core.management import call_command
from django.db import connection
from django.test import Client, TestCase, TransactionTestCase, override_settings
from django.urls import reverse
from django.utils import timezone

from .exceptions import DuplicateStockError, Forbidden, InvalidInput, NotFound, StorageError
from .ledger import adjust_stock, initialize_stock, stock_opname
from .models import Branch, BranchMember, Product, Stock, StockMovement
from .permissions import (
    CREATE_STOCK,
    EDIT_STOCK,
    STOCK_OPNAME,
    VIEW_STOCK,
    Actor,
    can_access_branch,
    can_perform_stock_write,
    ensure_stock_write,
    resolve_actor,
)
from .queries import list_stock, low_stock_alerts, movement_history, stock_for_product
from .references import next_reference_number
from .snapshots import MovementRecord, StockSnapshot, page_payload


def make_member(username, role, branch=None, **user_kwargs):
    user = User.objects.create_user(username=username, password="pass123", **user_kwargs)
    BranchMember.objects.create(user=user, branch=branch, role=role)
    return User.objects.get(pk=user.pk)


class StockFixtureMixin:
    def setUp(self):
        self.branch_a = Branch.objects.create(name="Branch A", code="BR-A")
        self.branch_b = Branch.objects.create(name="Branch B", code="BR-B")
        self.product = Product.objects.create(name="Alpha Soap", code="ALP-1")
        self.admin_a = make_member("admin_a", BranchMember.ROLE_BRANCH_ADMIN, self.branch_a)
        self.actor_a = resolve_actor(self.admin_a)


class ReferenceNumberTests(TestCase):
    def test_reference_has_prefix_date_and_suffix(self):
        reference = next_reference_number(today=date(2026, 1, 5))
        self.assertRegex(reference, r"^STK-20260105-[A-Z0-9]{6}$")

    @override_settings(INVENTORY_REFERENCE_PREFIX="MOV", INVENTORY_REFERENCE_SUFFIX_LENGTH=8)
    def test_reference_format_follows_settings(self):
        reference = next_reference_number(today=date(2025, 12, 31))
        self.assertRegex(reference, r"^MOV-20251231-[A-Z0-9]{8}$")

    def test_references_differ_between_calls(self):
        references = {next_reference_number() for _ in range(50)}
        self.assertEqual(len(references), 50)


class AdjustStockTests(StockFixtureMixin, TestCase):
    def setUp(self):
        super().setUp()
        self.stock = Stock.objects.create(product=self.product, branch=self.branch_a, quantity=10, minimum_stock=5)

    def test_withdrawal_beyond_quantity_clamps_to_zero_and_records_requested_magnitude(self):
        stock = adjust_stock(stock_id=self.stock.pk, quantity_change=-15, notes="correction", actor=self.actor_a)

        self.assertEqual(stock.quantity, 0)
        self.stock.refresh_from_db()
        self.assertEqual(self.stock.quantity, 0)

        movement = StockMovement.objects.get()
        self.assertEqual(movement.type, StockMovement.TYPE_OUT)
        self.assertEqual(movement.quantity, 15)
        self.assertEqual(movement.from_branch, self.branch_a)
        self.assertIsNone(movement.to_branch)
        self.assertEqual(movement.notes, "correction")
        self.assertEqual(movement.created_by, self.admin_a)
        self.assertEqual(movement.product, self.product)

    def test_restock_from_zero_records_incoming_movement(self):
        Stock.objects.filter(pk=self.stock.pk).update(quantity=0)

        stock = adjust_stock(stock_id=self.stock.pk, quantity_change=3, notes="restock", actor=self.actor_a)

        self.assertEqual(stock.quantity, 3)
        movement = StockMovement.objects.get()
        self.assertEqual(movement.type, StockMovement.TYPE_IN)
        self.assertEqual(movement.quantity, 3)
        self.assertEqual(movement.to_branch, self.branch_a)
        self.assertIsNone(movement.from_branch)

    def test_missing_notes_default_to_manual_adjustment(self):
        adjust_stock(stock_id=self.stock.pk, quantity_change=2, notes=None, actor=self.actor_a)
        self.assertEqual(StockMovement.objects.get().notes, "Manual adjustment")

    def test_zero_change_is_recorded_as_outgoing(self):
        stock = adjust_stock(stock_id=self.stock.pk, quantity_change=0, actor=self.actor_a)

        self.assertEqual(stock.quantity, 10)
        movement = StockMovement.objects.get()
        self.assertEqual(movement.type, StockMovement.TYPE_OUT)
        self.assertEqual(movement.quantity, 0)
        self.assertEqual(movement.from_branch, self.branch_a)

    def test_unknown_stock_raises_not_found(self):
        with self.assertRaises(NotFound):
            adjust_stock(stock_id=self.stock.pk + 100, quantity_change=1, actor=self.actor_a)
        self.assertFalse(StockMovement.objects.exists())

    def test_adjustments_from_stale_copies_are_all_applied(self):
        stale = Stock.objects.get(pk=self.stock.pk)

        adjust_stock(stock_id=stale.pk, quantity_change=1, actor=self.actor_a)
        adjust_stock(stock_id=stale.pk, quantity_change=1, actor=self.actor_a)

        self.stock.refresh_from_db()
        self.assertEqual(self.stock.quantity, 12)
        references = set(StockMovement.objects.values_list("reference_number", flat=True))
        self.assertEqual(len(references), 2)

    def test_quantity_always_matches_initial_plus_signed_movements(self):
        for change in (5, -3, -20, 7, 0):
            adjust_stock(stock_id=self.stock.pk, quantity_change=change, actor=self.actor_a)

        self.stock.refresh_from_db()
        # 10 +5 -3 = 12, -20 clamps to 0, +7 = 7, 0 leaves 7
        self.assertEqual(self.stock.quantity, 7)
        self.assertEqual(StockMovement.objects.count(), 5)

    def test_clamp_is_logged_with_requested_and_applied_change(self):
        with self.assertLogs("inventory.ledger", level="WARNING") as logs:
            adjust_stock(stock_id=self.stock.pk, quantity_change=-15, actor=self.actor_a)

        self.assertTrue(any("requested change -15, applied -10" in line for line in logs.output))

    def test_reference_collision_is_retried_with_fresh_number(self):
        StockMovement.objects.create(
            reference_number="STK-20260105-TAKEN1",
            product=self.product,
            type=StockMovement.TYPE_IN,
            quantity=1,
            created_by=self.admin_a,
            to_branch=self.branch_a,
        )

        with mock.patch(
            "inventory.ledger.next_reference_number",
            side_effect=["STK-20260105-TAKEN1", "STK-20260105-FRESH1"],
        ):
            with self.assertLogs("inventory.ledger", level="WARNING"):
                stock = adjust_stock(stock_id=self.stock.pk, quantity_change=4, actor=self.actor_a)

        self.assertEqual(stock.quantity, 14)
        self.assertTrue(StockMovement.objects.filter(reference_number="STK-20260105-FRESH1", quantity=4).exists())
        self.assertEqual(StockMovement.objects.count(), 2)

    @override_settings(INVENTORY_REFERENCE_MAX_ATTEMPTS=3)
    def test_repeated_collisions_surface_as_storage_error_without_partial_write(self):
        StockMovement.objects.create(
            reference_number="STK-20260105-TAKEN1",
            product=self.product,
            type=StockMovement.TYPE_IN,
            quantity=1,
            created_by=self.admin_a,
            to_branch=self.branch_a,
        )

        with mock.patch("inventory.ledger.next_reference_number", return_value="STK-20260105-TAKEN1") as generator:
            with self.assertRaises(StorageError):
                adjust_stock(stock_id=self.stock.pk, quantity_change=-4, actor=self.actor_a)

        self.assertEqual(generator.call_count, 3)
        self.stock.refresh_from_db()
        self.assertEqual(self.stock.quantity, 10)
        self.assertEqual(StockMovement.objects.count(), 1)


class InitializeStockTests(StockFixtureMixin, TestCase):
    def test_zero_quantity_creates_stock_without_movement(self):
        stock = initialize_stock(
            product_id=self.product.pk,
            branch_id=self.branch_a.pk,
            quantity=0,
            minimum_stock=4,
            actor=self.actor_a,
        )

        self.assertEqual(stock.quantity, 0)
        self.assertEqual(stock.minimum_stock, 4)
        self.assertFalse(StockMovement.objects.exists())

    def test_positive_quantity_creates_single_incoming_movement(self):
        stock = initialize_stock(
            product_id=self.product.pk,
            branch_id=self.branch_a.pk,
            quantity=5,
            actor=self.actor_a,
        )

        self.assertEqual(stock.quantity, 5)
        movement = StockMovement.objects.get()
        self.assertEqual(movement.type, StockMovement.TYPE_IN)
        self.assertEqual(movement.quantity, 5)
        self.assertEqual(movement.to_branch, self.branch_a)
        self.assertIsNone(movement.from_branch)
        self.assertEqual(movement.notes, "Initial stock")

    def test_second_initialization_is_rejected_and_first_state_kept(self):
        initialize_stock(
            product_id=self.product.pk,
            branch_id=self.branch_a.pk,
            quantity=5,
            minimum_stock=2,
            actor=self.actor_a,
        )

        with self.assertRaises(DuplicateStockError):
            initialize_stock(
                product_id=self.product.pk,
                branch_id=self.branch_a.pk,
                quantity=50,
                minimum_stock=9,
                actor=self.actor_a,
            )

        stock = Stock.objects.get(product=self.product, branch=self.branch_a)
        self.assertEqual(stock.quantity, 5)
        self.assertEqual(stock.minimum_stock, 2)
        self.assertEqual(StockMovement.objects.count(), 1)

    def test_same_product_can_be_initialized_in_another_branch(self):
        initialize_stock(product_id=self.product.pk, branch_id=self.branch_a.pk, quantity=1, actor=self.actor_a)
        initialize_stock(product_id=self.product.pk, branch_id=self.branch_b.pk, quantity=1, actor=self.actor_a)
        self.assertEqual(Stock.objects.filter(product=self.product).count(), 2)

    def test_unknown_product_or_branch_raises_not_found(self):
        with self.assertRaises(NotFound):
            initialize_stock(product_id=self.product.pk + 100, branch_id=self.branch_a.pk, quantity=1, actor=self.actor_a)
        with self.assertRaises(NotFound):
            initialize_stock(product_id=self.product.pk, branch_id=self.branch_b.pk + 100, quantity=1, actor=self.actor_a)
        self.assertFalse(Stock.objects.exists())

    def test_negative_values_are_rejected_as_invalid_input(self):
        with self.assertRaises(InvalidInput) as raised:
            initialize_stock(product_id=self.product.pk, branch_id=self.branch_a.pk, quantity=-1, actor=self.actor_a)
        self.assertEqual(raised.exception.status_code, 400)
        with self.assertRaises(InvalidInput):
            initialize_stock(
                product_id=self.product.pk,
                branch_id=self.branch_a.pk,
                quantity=1,
                minimum_stock=-1,
                actor=self.actor_a,
            )


class StockOpnameTests(StockFixtureMixin, TestCase):
    def setUp(self):
        super().setUp()
        self.other_product = Product.objects.create(name="Beta Rice", code="BET-2")
        self.stock_one = Stock.objects.create(product=self.product, branch=self.branch_a, quantity=100)
        self.stock_two = Stock.objects.create(product=self.other_product, branch=self.branch_a, quantity=50)

    def test_counted_differences_reset_quantities_and_record_movements(self):
        lines = stock_opname(
            branch_id=self.branch_a.pk,
            counts={self.product.pk: 95, self.other_product.pk: 55},
            actor=self.actor_a,
        )

        self.assertEqual(len(lines), 2)
        self.assertEqual({line.difference for line in lines}, {-5, 5})
        self.stock_one.refresh_from_db()
        self.stock_two.refresh_from_db()
        self.assertEqual(self.stock_one.quantity, 95)
        self.assertEqual(self.stock_two.quantity, 55)

        out_movement = StockMovement.objects.get(product=self.product)
        self.assertEqual(out_movement.type, StockMovement.TYPE_OUT)
        self.assertEqual(out_movement.quantity, 5)
        self.assertEqual(out_movement.from_branch, self.branch_a)
        self.assertEqual(out_movement.notes, "Stock opname: system (100) vs physical (95)")

        in_movement = StockMovement.objects.get(product=self.other_product)
        self.assertEqual(in_movement.type, StockMovement.TYPE_IN)
        self.assertEqual(in_movement.to_branch, self.branch_a)

    def test_negative_count_is_invalid_input(self):
        with self.assertRaises(InvalidInput):
            stock_opname(branch_id=self.branch_a.pk, counts={self.product.pk: -1}, actor=self.actor_a)
        self.stock_one.refresh_from_db()
        self.assertEqual(self.stock_one.quantity, 100)

    def test_matching_counts_write_nothing(self):
        lines = stock_opname(branch_id=self.branch_a.pk, counts={self.product.pk: 100}, actor=self.actor_a)
        self.assertEqual(lines, [])
        self.assertFalse(StockMovement.objects.exists())

    def test_product_without_stock_row_aborts_whole_count(self):
        stray = Product.objects.create(name="Gamma Oil", code="GAM-3")

        with self.assertRaises(NotFound):
            stock_opname(
                branch_id=self.branch_a.pk,
                counts={self.product.pk: 10, stray.pk: 4},
                actor=self.actor_a,
            )

        self.stock_one.refresh_from_db()
        self.assertEqual(self.stock_one.quantity, 100)
        self.assertFalse(StockMovement.objects.exists())


class StockMovementImmutabilityTests(StockFixtureMixin, TestCase):
    def setUp(self):
        super().setUp()
        initialize_stock(product_id=self.product.pk, branch_id=self.branch_a.pk, quantity=5, actor=self.actor_a)
        self.movement = StockMovement.objects.get()

    def test_existing_movement_cannot_be_saved_again(self):
        self.movement.quantity = 500
        with self.assertRaises(ValidationError):
            self.movement.save()
        self.movement.refresh_from_db()
        self.assertEqual(self.movement.quantity, 5)

    def test_movement_cannot_be_deleted(self):
        with self.assertRaises(ValidationError):
            self.movement.delete()
        self.assertTrue(StockMovement.objects.filter(pk=self.movement.pk).exists())


class AuthorizationGuardTests(StockFixtureMixin, TestCase):
    def test_branch_admin_resolves_to_own_branch_with_write_capabilities(self):
        self.assertEqual(self.actor_a.branch_id, self.branch_a.pk)
        self.assertFalse(self.actor_a.is_global)
        self.assertIn(EDIT_STOCK, self.actor_a.capabilities)
        self.assertIn(CREATE_STOCK, self.actor_a.capabilities)
        self.assertIn(STOCK_OPNAME, self.actor_a.capabilities)

    def test_superuser_without_membership_is_global(self):
        root = User.objects.create_superuser(username="root", password="pass123")
        actor = resolve_actor(root)

        self.assertTrue(actor.is_global)
        self.assertTrue(can_access_branch(actor, self.branch_b.pk))

    def test_super_admin_member_is_global(self):
        head = make_member("head_office", BranchMember.ROLE_SUPER_ADMIN)
        actor = resolve_actor(head)

        self.assertTrue(actor.is_global)
        self.assertIsNone(actor.branch_id)
        self.assertTrue(can_perform_stock_write(actor, EDIT_STOCK))

    def test_user_without_membership_resolves_to_none(self):
        stranger = User.objects.create_user(username="stranger", password="pass123")
        self.assertIsNone(resolve_actor(stranger))
        self.assertFalse(can_access_branch(None, self.branch_a.pk))

    def test_branch_scoped_actor_only_reaches_own_branch(self):
        self.assertTrue(can_access_branch(self.actor_a, self.branch_a.pk))
        self.assertFalse(can_access_branch(self.actor_a, self.branch_b.pk))
        with self.assertRaises(Forbidden):
            ensure_stock_write(self.actor_a, EDIT_STOCK, self.branch_b.pk)

    def test_sales_member_can_view_but_not_write(self):
        seller = make_member("seller", BranchMember.ROLE_SALES, self.branch_a)
        actor = resolve_actor(seller)

        self.assertIn(VIEW_STOCK, actor.capabilities)
        self.assertFalse(can_perform_stock_write(actor, EDIT_STOCK))
        with self.assertRaises(Forbidden):
            ensure_stock_write(actor, EDIT_STOCK, self.branch_a.pk)

    def test_capability_is_checked_independently_of_role(self):
        seller = make_member("seller", BranchMember.ROLE_SALES, self.branch_a)
        seller.user_permissions.add(Permission.objects.get(content_type__app_label="inventory", codename="change_stock"))
        actor = resolve_actor(User.objects.get(pk=seller.pk))

        self.assertTrue(can_perform_stock_write(actor, EDIT_STOCK))
        self.assertFalse(can_perform_stock_write(actor, CREATE_STOCK))

    def test_view_capability_never_counts_as_write(self):
        self.assertFalse(can_perform_stock_write(self.actor_a, VIEW_STOCK))

    def test_role_change_moves_user_to_new_role_group(self):
        member = BranchMember.objects.get(user=self.admin_a)
        member.role = BranchMember.ROLE_SALES
        member.save()

        self.assertEqual(list(self.admin_a.groups.values_list("name", flat=True)), ["Sales"])
        actor = resolve_actor(User.objects.get(pk=self.admin_a.pk))
        self.assertNotIn(EDIT_STOCK, actor.capabilities)

    def test_branch_scoped_member_requires_branch(self):
        user = User.objects.create_user(username="floating", password="pass123")
        with self.assertRaises(ValidationError):
            BranchMember.objects.create(user=user, role=BranchMember.ROLE_BRANCH_ADMIN)


class SeedStockRolesCommandTests(TestCase):
    def test_command_creates_role_groups(self):
        call_command("seed_stock_roles", "--skip-members", stdout=StringIO())

        sales = Group.objects.get(name="Sales")
        self.assertEqual(list(sales.permissions.values_list("codename", flat=True)), ["view_stock"])
        self.assertEqual(Group.objects.get(name="Branch Admin").permissions.count(), 4)
        self.assertTrue(Group.objects.filter(name="Super Admin").exists())


class StockQueryTests(StockFixtureMixin, TestCase):
    def setUp(self):
        super().setUp()
        self.rice = Product.objects.create(name="Beta Rice", code="BET-2")
        self.alpha_a = Stock.objects.create(product=self.product, branch=self.branch_a, quantity=3, minimum_stock=5)
        self.rice_a = Stock.objects.create(product=self.rice, branch=self.branch_a, quantity=20, minimum_stock=5)
        self.alpha_b = Stock.objects.create(product=self.product, branch=self.branch_b, quantity=1, minimum_stock=0)
        self.head = resolve_actor(make_member("head_office", BranchMember.ROLE_SUPER_ADMIN))

    def test_global_actor_sees_every_branch_most_depleted_first(self):
        page = list_stock(actor=self.head)

        self.assertEqual(page.paginator.count, 3)
        self.assertEqual([stock.pk for stock in page], [self.alpha_b.pk, self.alpha_a.pk, self.rice_a.pk])

    def test_global_actor_can_narrow_to_branch(self):
        page = list_stock(actor=self.head, branch_id=self.branch_b.pk)
        self.assertEqual([stock.pk for stock in page], [self.alpha_b.pk])

    def test_branch_scoped_actor_is_pinned_to_own_branch(self):
        page = list_stock(actor=self.actor_a, branch_id=self.branch_b.pk)
        self.assertEqual({stock.branch_id for stock in page}, {self.branch_a.pk})
        self.assertEqual(page.paginator.count, 2)

    def test_low_stock_filter_uses_minimum_threshold(self):
        page = list_stock(actor=self.head, low_stock_only=True)
        self.assertEqual([stock.pk for stock in page], [self.alpha_a.pk])

    def test_search_matches_product_name_or_code(self):
        by_name = list_stock(actor=self.head, search="rice")
        by_code = list_stock(actor=self.head, search="alp-")

        self.assertEqual([stock.pk for stock in by_name], [self.rice_a.pk])
        self.assertEqual({stock.pk for stock in by_code}, {self.alpha_a.pk, self.alpha_b.pk})

    @override_settings(INVENTORY_PAGE_SIZE=2)
    def test_pagination_reports_boundaries_and_recovers_from_bad_pages(self):
        first = list_stock(actor=self.head, page=1)
        second = list_stock(actor=self.head, page=2)

        self.assertEqual(len(first), 2)
        self.assertEqual(first.paginator.num_pages, 2)
        self.assertEqual((first.start_index(), first.end_index()), (1, 2))
        self.assertEqual((second.start_index(), second.end_index()), (3, 3))
        self.assertEqual(list_stock(actor=self.head, page="abc").number, 1)
        self.assertEqual(list_stock(actor=self.head, page=99).number, 2)

    def test_actor_without_view_capability_is_forbidden(self):
        blind = Actor(user=self.admin_a, branch_id=self.branch_a.pk, is_global=False, capabilities=frozenset())
        with self.assertRaises(Forbidden):
            list_stock(actor=blind)

    def test_low_stock_alerts_follow_actor_scope(self):
        self.assertEqual([stock.pk for stock in low_stock_alerts(actor=self.actor_a)], [self.alpha_a.pk])
        self.assertEqual(low_stock_alerts(actor=self.head, branch_id=self.branch_b.pk), [])

    def test_stock_for_product_lists_visible_branches(self):
        self.assertEqual(
            [stock.pk for stock in stock_for_product(actor=self.head, product_id=self.product.pk)],
            [self.alpha_a.pk, self.alpha_b.pk],
        )
        self.assertEqual(
            [stock.pk for stock in stock_for_product(actor=self.actor_a, product_id=self.product.pk)],
            [self.alpha_a.pk],
        )


class MovementHistoryTests(StockFixtureMixin, TestCase):
    def setUp(self):
        super().setUp()
        self.rice = Product.objects.create(name="Beta Rice", code="BET-2")
        self.head = resolve_actor(make_member("head_office", BranchMember.ROLE_SUPER_ADMIN))

        self.stock = initialize_stock(product_id=self.product.pk, branch_id=self.branch_a.pk, quantity=10, actor=self.head)
        adjust_stock(stock_id=self.stock.pk, quantity_change=-4, notes="sold", actor=self.head)
        adjust_stock(stock_id=self.stock.pk, quantity_change=2, notes="returned", actor=self.head)

        other_branch = initialize_stock(product_id=self.product.pk, branch_id=self.branch_b.pk, quantity=7, actor=self.head)
        adjust_stock(stock_id=other_branch.pk, quantity_change=-1, actor=self.head)
        initialize_stock(product_id=self.rice.pk, branch_id=self.branch_a.pk, quantity=3, actor=self.head)

    def test_history_only_covers_same_product_and_branch_newest_first(self):
        page = movement_history(actor=self.actor_a, stock_id=self.stock.pk)

        self.assertEqual([movement.notes for movement in page], ["returned", "sold", "Initial stock"])
        for movement in page:
            self.assertEqual(movement.product_id, self.product.pk)
            self.assertIn(self.branch_a.pk, (movement.from_branch_id, movement.to_branch_id))

    def test_history_of_foreign_branch_is_forbidden(self):
        admin_b = resolve_actor(make_member("admin_b", BranchMember.ROLE_BRANCH_ADMIN, self.branch_b))
        with self.assertRaises(Forbidden):
            movement_history(actor=admin_b, stock_id=self.stock.pk)

    def test_unknown_stock_raises_not_found(self):
        with self.assertRaises(NotFound):
            movement_history(actor=self.head, stock_id=self.stock.pk + 100)

    def test_iso_date_range_is_inclusive_of_both_ends(self):
        today = timezone.localdate()
        tomorrow = (today + timedelta(days=1)).isoformat()
        yesterday = (today - timedelta(days=1)).isoformat()

        def count(**dates):
            return movement_history(actor=self.head, stock_id=self.stock.pk, **dates).paginator.count

        self.assertEqual(count(from_date=today.isoformat(), to_date=today.isoformat()), 3)
        self.assertEqual(count(from_date=yesterday), 3)
        self.assertEqual(count(from_date=tomorrow), 0)
        self.assertEqual(count(to_date=yesterday), 0)

    def test_unparseable_dates_are_rejected(self):
        with self.assertRaises(InvalidInput) as raised:
            movement_history(actor=self.head, stock_id=self.stock.pk, from_date="yesterday")
        self.assertIn("from_date", raised.exception.errors)

    def test_actor_without_view_capability_cannot_learn_stock_ids(self):
        blind = Actor(user=self.admin_a, branch_id=self.branch_a.pk, is_global=False, capabilities=frozenset())
        with self.assertRaises(Forbidden):
            movement_history(actor=blind, stock_id=self.stock.pk + 100)


class SnapshotTests(StockFixtureMixin, TestCase):
    def test_stock_snapshot_flags_low_stock(self):
        stock = Stock.objects.create(product=self.product, branch=self.branch_a, quantity=2, minimum_stock=2)
        snapshot = StockSnapshot.from_stock(stock).as_dict()

        self.assertEqual(snapshot["product_code"], "ALP-1")
        self.assertEqual(snapshot["branch_name"], "Branch A")
        self.assertTrue(snapshot["low_stock"])

    def test_movement_record_uses_branch_names_and_username_fallback(self):
        stock = initialize_stock(product_id=self.product.pk, branch_id=self.branch_a.pk, quantity=1, actor=self.actor_a)
        adjust_stock(stock_id=stock.pk, quantity_change=-1, actor=self.actor_a)

        page = movement_history(actor=self.actor_a, stock_id=stock.pk)
        payload = page_payload(page, MovementRecord.from_movement)

        self.assertEqual(payload["count"], 2)
        latest = payload["results"][0]
        self.assertEqual(latest["type"], "out")
        self.assertEqual(latest["from_branch"], "Branch A")
        self.assertIsNone(latest["to_branch"])
        self.assertEqual(latest["created_by"], "admin_a")
        self.assertTrue(re.match(r"^STK-\d{8}-[A-Z0-9]{6}$", latest["reference_number"]))


class StockEndpointTests(StockFixtureMixin, TestCase):
    def setUp(self):
        super().setUp()
        self.client = Client()
        self.stock = Stock.objects.create(product=self.product, branch=self.branch_a, quantity=10, minimum_stock=5)
        self.client.force_login(self.admin_a)

    def test_adjust_endpoint_applies_change(self):
        response = self.client.post(
            reverse("inventory:stock-adjust", args=[self.stock.pk]),
            {"quantity_change": "-4", "notes": "damaged"},
        )

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["stock"]["quantity"], 6)
        self.assertEqual(StockMovement.objects.get().notes, "damaged")

    def test_adjust_on_foreign_branch_is_forbidden_without_state_change(self):
        self.client.force_login(make_member("admin_b", BranchMember.ROLE_BRANCH_ADMIN, self.branch_b))

        response = self.client.post(
            reverse("inventory:stock-adjust", args=[self.stock.pk]),
            {"quantity_change": "5"},
        )

        self.assertEqual(response.status_code, 403)
        self.stock.refresh_from_db()
        self.assertEqual(self.stock.quantity, 10)
        self.assertFalse(StockMovement.objects.exists())

    def test_sales_member_cannot_adjust(self):
        self.client.force_login(make_member("seller", BranchMember.ROLE_SALES, self.branch_a))
        response = self.client.post(reverse("inventory:stock-adjust", args=[self.stock.pk]), {"quantity_change": "1"})
        self.assertEqual(response.status_code, 403)

    def test_zero_adjustment_is_rejected_by_form(self):
        response = self.client.post(reverse("inventory:stock-adjust", args=[self.stock.pk]), {"quantity_change": "0"})

        self.assertEqual(response.status_code, 400)
        self.assertIn("quantity_change", response.json()["errors"])
        self.assertFalse(StockMovement.objects.exists())

    def test_adjust_unknown_stock_returns_not_found(self):
        response = self.client.post(reverse("inventory:stock-adjust", args=[self.stock.pk + 100]), {"quantity_change": "1"})
        self.assertEqual(response.status_code, 404)

    def test_anonymous_request_is_rejected(self):
        self.client.logout()
        response = self.client.get(reverse("inventory:stock-list"))
        self.assertEqual(response.status_code, 401)

    def test_user_without_membership_is_forbidden(self):
        self.client.force_login(User.objects.create_user(username="stranger", password="pass123"))
        response = self.client.get(reverse("inventory:stock-list"))
        self.assertEqual(response.status_code, 403)

    def test_initialize_endpoint_creates_stock_then_reports_duplicate(self):
        rice = Product.objects.create(name="Beta Rice", code="BET-2")
        payload = {"product": rice.pk, "branch": self.branch_a.pk, "quantity": 8, "minimum_stock": 2}

        created = self.client.post(reverse("inventory:stock-initialize"), payload)
        duplicate = self.client.post(reverse("inventory:stock-initialize"), payload)

        self.assertEqual(created.status_code, 201)
        self.assertEqual(created.json()["stock"]["quantity"], 8)
        self.assertEqual(duplicate.status_code, 409)
        self.assertEqual(StockMovement.objects.filter(product=rice).count(), 1)

    def test_initialize_in_foreign_branch_is_forbidden(self):
        response = self.client.post(
            reverse("inventory:stock-initialize"),
            {"product": self.product.pk, "branch": self.branch_b.pk, "quantity": 3},
        )
        self.assertEqual(response.status_code, 403)
        self.assertFalse(Stock.objects.filter(branch=self.branch_b).exists())

    def test_list_endpoint_returns_paginated_snapshots(self):
        response = self.client.get(reverse("inventory:stock-list"), {"low_stock": "true"})

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["count"], 0)
        self.assertEqual(body["results"], [])

        body = self.client.get(reverse("inventory:stock-list")).json()
        self.assertEqual(body["count"], 1)
        self.assertEqual(body["results"][0]["product_name"], "Alpha Soap")

    def test_low_stock_endpoint(self):
        Stock.objects.filter(pk=self.stock.pk).update(quantity=5)
        body = self.client.get(reverse("inventory:stock-low")).json()
        self.assertEqual([row["id"] for row in body["results"]], [self.stock.pk])

    def test_movements_endpoint_lists_history(self):
        self.client.post(reverse("inventory:stock-adjust", args=[self.stock.pk]), {"quantity_change": "2"})

        response = self.client.get(reverse("inventory:stock-movements", args=[self.stock.pk]))

        self.assertEqual(response.status_code, 200)
        results = response.json()["results"]
        self.assertEqual(len(results), 1)
        self.assertEqual(results[0]["type"], "in")
        self.assertEqual(results[0]["to_branch"], "Branch A")

    def test_opname_endpoint_resets_counted_quantity(self):
        response = self.client.post(
            reverse("inventory:stock-opname"),
            {"branch": self.branch_a.pk, f"count_{self.product.pk}": "7"},
        )

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["adjustments"][0]["difference"], -3)
        self.stock.refresh_from_db()
        self.assertEqual(self.stock.quantity, 7)

    def test_movements_endpoint_rejects_bad_dates(self):
        response = self.client.get(
            reverse("inventory:stock-movements", args=[self.stock.pk]),
            {"from_date": "05/01/2026"},
        )

        self.assertEqual(response.status_code, 400)
        self.assertIn("from_date", response.json()["errors"])

    def test_movements_endpoint_accepts_iso_dates(self):
        self.client.post(reverse("inventory:stock-adjust", args=[self.stock.pk]), {"quantity_change": "2"})
        today = timezone.localdate().isoformat()

        response = self.client.get(
            reverse("inventory:stock-movements", args=[self.stock.pk]),
            {"from_date": today, "to_date": today},
        )

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["count"], 1)

    def test_actor_without_capability_gets_forbidden_for_unknown_stock(self):
        self.client.force_login(make_member("seller", BranchMember.ROLE_SALES, self.branch_a))
        response = self.client.post(reverse("inventory:stock-adjust", args=[self.stock.pk + 100]), {"quantity_change": "1"})
        self.assertEqual(response.status_code, 403)

    def test_negative_ledger_input_maps_to_bad_request(self):
        with mock.patch("inventory.views.stock_opname", side_effect=InvalidInput("Counted quantities cannot be negative.")):
            response = self.client.post(
                reverse("inventory:stock-opname"),
                {"branch": self.branch_a.pk, f"count_{self.product.pk}": "7"},
            )
        self.assertEqual(response.status_code, 400)

    def test_stock_by_product_returns_own_branch_row(self):
        Stock.objects.create(product=self.product, branch=self.branch_b, quantity=4)

        response = self.client.get(reverse("inventory:stock-by-product", args=[self.product.pk]))

        self.assertEqual(response.status_code, 200)
        results = response.json()["results"]
        self.assertEqual([row["id"] for row in results], [self.stock.pk])
        self.assertEqual(results[0]["branch_name"], "Branch A")

    def test_stock_by_product_lists_every_branch_for_global_actor(self):
        Stock.objects.create(product=self.product, branch=self.branch_b, quantity=4)
        self.client.force_login(make_member("head_office", BranchMember.ROLE_SUPER_ADMIN))

        results = self.client.get(reverse("inventory:stock-by-product", args=[self.product.pk])).json()["results"]

        self.assertEqual([row["quantity"] for row in results], [10, 4])

    def test_stock_by_product_without_row_in_branch_is_not_found(self):
        rice = Product.objects.create(name="Beta Rice", code="BET-2")
        Stock.objects.create(product=rice, branch=self.branch_b, quantity=4)

        response = self.client.get(reverse("inventory:stock-by-product", args=[rice.pk]))

        self.assertEqual(response.status_code, 404)

    def test_get_is_not_allowed_on_write_endpoints(self):
        response = self.client.get(reverse("inventory:stock-adjust", args=[self.stock.pk]))
        self.assertEqual(response.status_code, 405)


class ConcurrentAdjustmentTests(TransactionTestCase):
    def test_parallel_increments_are_all_applied(self):
        branch = Branch.objects.create(name="Branch A", code="BR-A")
        product = Product.objects.create(name="Alpha Soap", code="ALP-1")
        stock = Stock.objects.create(product=product, branch=branch, quantity=10)
        actor = resolve_actor(make_member("admin_a", BranchMember.ROLE_BRANCH_ADMIN, branch))

        barrier = threading.Barrier(4)
        errors = []

        def worker():
            try:
                barrier.wait()
                adjust_stock(stock_id=stock.pk, quantity_change=1, notes="parallel", actor=actor)
            except Exception as exc:
                errors.append(exc)
            finally:
                connection.close()

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        self.assertEqual(errors, [])
        stock.refresh_from_db()
        self.assertEqual(stock.quantity, 14)
        references = StockMovement.objects.filter(notes="parallel").values_list("reference_number", flat=True)
        self.assertEqual(len(set(references)), 4)
