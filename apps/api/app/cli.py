"""CLI tools for ServiceFlow administration."""

import json

import click

from app.core.errors import FlowValidationError
from app.db.models import Contact, Organization
from app.db.session import SessionLocal


@click.group()
def cli():
    """ServiceFlow CLI tools."""
    pass


@cli.command("seed-defaults")
def seed_defaults():
    """
    Create the default organization and user.

    Runs started on flows without an owner are attributed to these.
    Safe to run repeatedly.
    """
    from app.services import bootstrap_service

    db = SessionLocal()
    try:
        defaults = bootstrap_service.ensure_defaults(db)
        click.echo(f"✓ Default organization: {defaults.organization.name} ({defaults.organization.id})")
        click.echo(f"✓ Default user: {defaults.user.email} ({defaults.user.id})")
    finally:
        db.close()


@cli.command("create-org")
@click.option("--name", required=True, help="Organization name")
@click.option("--slug", required=True, help="URL-friendly slug (lowercase, no spaces)")
def create_org(name: str, slug: str):
    """
    Create an organization.

    Example:
        python -m app.cli create-org --name "Acme Corp" --slug "acme"
    """
    db = SessionLocal()
    try:
        slug = slug.lower().strip()
        if not slug.replace("-", "").replace("_", "").isalnum():
            click.echo("❌ Slug must be alphanumeric (with optional hyphens/underscores)")
            return

        existing = db.query(Organization).filter(Organization.slug == slug).first()
        if existing:
            click.echo(f"❌ Organization with slug '{slug}' already exists")
            return

        org = Organization(name=name, slug=slug)
        db.add(org)
        db.commit()
        click.echo(f"✓ Created organization: {name}")
        click.echo(f"  ID: {org.id}")
    finally:
        db.close()


@cli.command("create-contact")
@click.option("--org-slug", required=True, help="Owning organization slug")
@click.option("--email", required=True)
@click.option("--name", required=True)
@click.option("--id", "contact_id", default=None, help="Explicit contact id (defaults to a UUID)")
def create_contact(org_slug: str, email: str, name: str, contact_id: str | None):
    """Create a contact that can be assigned to flow roles."""
    db = SessionLocal()
    try:
        org = db.query(Organization).filter(Organization.slug == org_slug.lower()).first()
        if not org:
            click.echo(f"❌ Organization '{org_slug}' not found")
            return
        contact = Contact(organization_id=org.id, email=email.lower(), name=name)
        if contact_id:
            contact.id = contact_id
        db.add(contact)
        db.commit()
        click.echo(f"✓ Created contact {contact.id}")
    finally:
        db.close()


@cli.command("import-flow")
@click.argument("path", type=click.Path(exists=True, dir_okay=False))
@click.option("--name", default=None, help="Flow name (defaults to the file's 'name' key)")
@click.option("--org-slug", default=None, help="Owning organization slug")
def import_flow(path: str, name: str | None, org_slug: str | None):
    """
    Import a flow definition from a JSON file.

    The file holds either the definition itself or {"name", "definition"}.
    """
    from app.services import flow_service

    with open(path, encoding="utf-8") as fh:
        document = json.load(fh)
    definition = document.get("definition", document)
    flow_name = name or document.get("name") or "Imported flow"

    db = SessionLocal()
    try:
        org_id = None
        if org_slug:
            org = db.query(Organization).filter(Organization.slug == org_slug.lower()).first()
            if not org:
                click.echo(f"❌ Organization '{org_slug}' not found")
                return
            org_id = org.id
        try:
            flow = flow_service.create_flow(
                db, name=flow_name, definition=definition, org_id=org_id
            )
        except FlowValidationError as e:
            db.rollback()
            click.echo(f"❌ {e.message}")
            return
        db.commit()
        click.echo(f"✓ Imported flow '{flow.name}'")
        click.echo(f"  ID: {flow.id}")
        click.echo(f"  Start URL: /api/webhooks/flows/{flow.id}/start")
    finally:
        db.close()


if __name__ == "__main__":
    cli()
