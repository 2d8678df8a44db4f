"""
Management command to make a user the owner of a tenant.

Creates the owner membership (or promotes an existing one), which bypasses
every permission check in the tenant.
"""
from django.core.management.base import BaseCommand, CommandError

from apps.rbac.models import User
from apps.tenants.models import Tenant
from apps.tenants.services.tenant_service import TenantService


class Command(BaseCommand):
    help = 'Make a user the owner of a tenant'

    def add_arguments(self, parser):
        parser.add_argument('--tenant', type=str, required=True, help='Tenant ID or slug')
        parser.add_argument('--email', type=str, required=True, help='User email address')
        parser.add_argument(
            '--create-user',
            action='store_true',
            help='Create user if they do not exist (requires --password)',
        )
        parser.add_argument('--password', type=str, help='Password for new user')

    def handle(self, *args, **options):
        email = options['email']
        password = options.get('password')

        if options['create_user'] and not password:
            raise CommandError('--password is required when using --create-user')

        tenant = Tenant.objects.by_slug_or_id(options['tenant'])
        if not tenant:
            raise CommandError(f'Tenant not found: {options["tenant"]}')

        user = User.objects.by_email(email)
        if not user:
            if not options['create_user']:
                raise CommandError(
                    f'User not found: {email}\n'
                    f'Use --create-user --password=<password> to create the user'
                )
            user = User.objects.create_user(email=email, password=password)
            self.stdout.write(self.style.SUCCESS(f'Created user: {user.email}'))

        membership = TenantService.ensure_owner(tenant, user)
        self.stdout.write(self.style.SUCCESS(
            f'{user.email} owns {tenant.name} (membership {membership.id})'
        ))
