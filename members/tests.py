from django.contrib.auth import get_user_model
from django.test import TestCase, override_settings

from .models import Member


class MemberTests(TestCase):
    def setUp(self):
        self.user = get_user_model().objects.create_user(username="m1", password="pass12345")
        self.member = Member.objects.create(user=self.user, full_name="Rafael Lima")

    def test_defaults(self):
        self.assertEqual(self.member.group, Member.Group.ADULT)
        self.assertEqual(self.member.belt, Member.Belt.WHITE)
        self.assertTrue(self.member.is_active)
        self.assertEqual(self.user.member, self.member)
        self.assertEqual(str(self.member), "Rafael Lima")

    @override_settings(ACADEMY_EXEMPT_BELTS=["black", "coral", "red"])
    def test_exempt_rank_follows_settings(self):
        self.assertFalse(self.member.is_exempt_rank)
        self.member.belt = Member.Belt.CORAL
        self.assertTrue(self.member.is_exempt_rank)

        with self.settings(ACADEMY_EXEMPT_BELTS=["red"]):
            self.assertFalse(self.member.is_exempt_rank)

    def test_block_and_unblock_checkin(self):
        self.member.block_checkin("Overdue monthly fee")
        self.member.refresh_from_db()
        self.assertTrue(self.member.checkin_blocked)
        self.assertEqual(self.member.block_reason, "Overdue monthly fee")

        self.member.unblock_checkin()
        self.member.refresh_from_db()
        self.assertFalse(self.member.checkin_blocked)
        self.assertEqual(self.member.block_reason, "")

    def test_inactive_statuses(self):
        for status in (Member.Status.INACTIVE, Member.Status.SUSPENDED, Member.Status.LOCKED):
            self.member.status = status
            self.assertFalse(self.member.is_active)
