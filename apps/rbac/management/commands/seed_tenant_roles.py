"""
Management command to seed system roles for tenants.

Creates the owner, developer and admin roles with their grants for one or
all tenants. Tenants get them automatically on creation; this command
backfills tenants created before a role was added. Idempotent.
"""
from django.core.management.base import BaseCommand, CommandError

from apps.rbac.services import RoleService
from apps.tenants.models import Tenant


class Command(BaseCommand):
    help = 'Seed system roles for tenant(s) (idempotent)'

    def add_arguments(self, parser):
        parser.add_argument(
            '--tenant',
            type=str,
            help='Tenant ID or slug to seed roles for',
        )
        parser.add_argument(
            '--all',
            action='store_true',
            help='Seed roles for all tenants',
        )

    def handle(self, *args, **options):
        tenant_ref = options.get('tenant')
        seed_all = options.get('all')

        if not tenant_ref and not seed_all:
            raise CommandError('You must specify either --tenant=<id> or --all')
        if tenant_ref and seed_all:
            raise CommandError('Cannot specify both --tenant and --all')

        if seed_all:
            tenants = list(Tenant.objects.all())
            self.stdout.write(f'Seeding roles for all {len(tenants)} tenants...')
        else:
            tenant = Tenant.objects.by_slug_or_id(tenant_ref)
            if not tenant:
                raise CommandError(f'Tenant not found: {tenant_ref}')
            tenants = [tenant]

        total_created = 0
        for tenant in tenants:
            created = RoleService.seed_system_roles(tenant)
            total_created += len(created)
            if created:
                self.stdout.write(self.style.SUCCESS(
                    f'  {tenant.slug}: created {", ".join(created)}'
                ))
            else:
                self.stdout.write(f'  {tenant.slug}: up to date')

        self.stdout.write(self.style.SUCCESS(
            f'Seeding complete: {total_created} roles created across {len(tenants)} tenant(s)'
        ))
