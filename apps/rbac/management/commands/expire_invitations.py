"""
Management command to expire overdue invitations.

Meant to run periodically (cron). Each expired invitation gets its own
invitation_expired audit entry.
"""
from django.core.management.base import BaseCommand

from apps.rbac.services import InvitationService


class Command(BaseCommand):
    help = 'Mark pending invitations past their expiry date as expired'

    def handle(self, *args, **options):
        count = InvitationService.expire_stale()
        self.stdout.write(self.style.SUCCESS(f'Expired {count} invitation(s)'))
