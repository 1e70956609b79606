from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path

from jinja2 import Environment, FileSystemLoader, select_autoescape

from app.config import settings

TEMPLATE_DIR = Path(__file__).resolve().parents[1] / "templates"


def format_money(value: Decimal | float | int | None) -> str:
    if value is None:
        return "-"
    amount = Decimal(value)
    if amount == amount.to_integral_value():
        return f"{amount:,.0f}"
    return f"{amount:,.2f}"


env = Environment(
    loader=FileSystemLoader(str(TEMPLATE_DIR)),
    autoescape=select_autoescape(["html"]),
)
env.filters["money"] = format_money


def render_template(template_path: str, **context) -> str:
    template = env.get_template(template_path)
    return template.render(
        store_name=settings.store_name,
        storefront_url=settings.storefront_url.rstrip("/"),
        year=datetime.now(timezone.utc).year,
        **context,
    )
