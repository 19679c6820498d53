"""
Assistant functions exposed to the LLM.

Each module declares its argument models, handlers and a DEFINITIONS list;
build_default_catalog() registers them in a fixed order.
"""

from services.tool_registry import ToolCatalog
from services.functions import balance_sheet, investments, loans, prepayment, spending, transactions


def build_default_catalog() -> ToolCatalog:
    catalog = ToolCatalog()
    for module in (transactions, balance_sheet, investments, loans, spending, prepayment):
        for definition in module.DEFINITIONS:
            catalog.register(definition)
    return catalog


__all__ = ["build_default_catalog"]
