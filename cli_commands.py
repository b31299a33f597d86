"""
Flask CLI commands for the GCE examination database and accounts
"""

import click
from flask import Flask
import logging

from config import Config
from db_single import get_session, create_tables, drop_tables
from init_db import run_on_startup, seed_default_data
from models import User, UserTypeEnum, AccountStatusEnum, generate_user_id

logger = logging.getLogger(__name__)


def register_cli_commands(app: Flask, app_config=None):
    """Register CLI commands with the Flask app"""
    app_config = app_config or Config()

    @app.cli.command("init-db")
    def init_db_command():
        """Create database, tables, and default records"""
        click.echo("🚀 Setting up database...")
        if run_on_startup(app_config):
            click.echo("✅ Database setup completed successfully!")
        else:
            click.echo("❌ Database setup failed!")

    @app.cli.command("seed-data")
    def seed_data_command():
        """Insert the default accounts, examiners, centres, subjects and settings"""
        session = get_session()
        try:
            counts = seed_default_data(session)
            click.echo("🌱 Default data seeded")
            for kind, added in counts.items():
                click.echo(f"   {kind}: {added} added")
        except Exception as e:
            session.rollback()
            click.echo(f"❌ Seeding failed: {e}")
        finally:
            session.close()

    @app.cli.command("create-user")
    @click.option("--email", required=True, help="Login email")
    @click.option("--password", required=True, help="Password (at least 8 characters)")
    @click.option("--name", required=True, help="Full name")
    @click.option("--type", "user_type", default="admin",
                  type=click.Choice([t.value for t in UserTypeEnum]), help="Account type")
    def create_user_command(email, password, name, user_type):
        """Create a confirmed account of any type"""
        if len(password) < 8:
            click.echo("❌ Password must be at least 8 characters long")
            return

        session = get_session()
        try:
            if session.query(User).filter_by(email=email.lower()).first():
                click.echo(f"❌ Email '{email}' already exists")
                return

            type_enum = UserTypeEnum(user_type)
            user = User(
                id=generate_user_id(type_enum),
                full_name=name,
                email=email.lower(),
                user_type=type_enum,
                registration_status=AccountStatusEnum.CONFIRMED,
                email_verified=True,
            )
            user.set_password(password)
            session.add(user)
            session.commit()

            click.echo(f"✅ {user_type.capitalize()} account created")
            click.echo(f"   ID: {user.id}")
            click.echo(f"   Email: {user.email}")
        except Exception as e:
            session.rollback()
            click.echo(f"❌ Failed to create user: {e}")
        finally:
            session.close()

    @app.cli.command("list-users")
    @click.option("--type", "user_type", type=click.Choice([t.value for t in UserTypeEnum]),
                  help="Filter by account type")
    def list_users_command(user_type):
        """List users in the system"""
        session = get_session()
        try:
            query = session.query(User)
            if user_type:
                query = query.filter(User.user_type == UserTypeEnum(user_type))

            users = query.order_by(User.email).all()
            if not users:
                click.echo("📭 No users found")
                return

            click.echo("👥 Users in system:")
            click.echo("-" * 80)
            for user in users:
                click.echo(f"  {user.email} ({user.full_name})")
                click.echo(f"    ID: {user.id}")
                click.echo(f"    Type: {user.user_type.value}")
                click.echo(f"    Status: {user.registration_status.value}")
                if user.school:
                    click.echo(f"    School: {user.school}")
                click.echo("-" * 80)
        finally:
            session.close()

    @app.cli.command("reset-db")
    @click.confirmation_option(prompt="This drops every table. Continue?")
    @click.option("--no-seed", is_flag=True, help="Leave the database empty")
    def reset_db_command(no_seed):
        """Drop and recreate every table"""
        drop_tables()
        create_tables()
        click.echo("🗑️ Tables dropped and recreated")
        if no_seed:
            return

        session = get_session()
        try:
            seed_default_data(session)
            click.echo("✅ Default data seeded")
        except Exception as e:
            session.rollback()
            click.echo(f"❌ Seeding failed: {e}")
        finally:
            session.close()
