from __future__ import annotations

from polymodo.apps.applications import ApplicationsApp
from polymodo.apps.calculator import CalculatorApp

BUILTIN_APPS = {
    ApplicationsApp.app_id: ApplicationsApp.from_context,
    CalculatorApp.app_id: CalculatorApp.from_context,
}

__all__ = ["ApplicationsApp", "BUILTIN_APPS", "CalculatorApp"]
