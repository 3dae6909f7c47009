import time

from plangraph.tools import tool


@tool
def fetch_budget(quarter: str) -> float:
    """
    Fetches the budget amount for a given quarter.

    :param quarter: The quarter to fetch the budget for (e.g., "Q1", "Q2", "Q3", "Q4").
    :return: The budget amount for the specified quarter.
    """
    time.sleep(0.5)
    quarters = {"Q1": 1_000_000, "Q2": 1_200_000, "Q3": 900_000, "Q4": 1_500_000}
    return quarters.get(quarter.upper(), 1_000_000)


@tool
def analyze_sales_data(quarter: str) -> float:
    """
    Analyzes sales data for a given quarter and returns the growth percentage.

    :param quarter: The quarter to analyze (e.g., "Q1", "Q2", "Q3", "Q4").
    :return: The growth percentage against the previous quarter.
    """
    time.sleep(0.5)
    multiplier = {"Q1": 1.0, "Q2": 1.2, "Q3": 0.9, "Q4": 1.5}.get(quarter.upper(), 1.0)
    revenue = 1_000_000 * multiplier
    previous = revenue * 0.85
    return round((revenue - previous) / previous * 100, 2)


@tool
def list_departments() -> list:
    """
    Lists the departments covered by the report.

    :return: The department names.
    """
    return ["Marketing", "Sales", "Engineering"]


@tool
def analyze_employee_performance(department: str) -> int:
    """
    Returns the employee satisfaction score of a department.

    :param department: The department name (e.g., "Marketing", "Sales", "Engineering").
    :return: The satisfaction score.
    """
    time.sleep(0.2)
    scores = {"marketing": 76, "sales": 68, "engineering": 82, "finance": 71, "hr": 88}
    return scores.get(department.lower(), 75)


@tool
def average(values: list) -> float:
    """
    Averages a list of numbers.

    :param values: The numbers.
    :return: Their mean, or 0 for an empty list.
    """
    return round(sum(values) / len(values), 2) if values else 0


@tool
def generate_budget_projection(base_amount: float, growth_rate: float, quarters: int = 1) -> float:
    """
    Projects a budget forward by compounding a growth rate per quarter.

    :param base_amount: The starting budget amount.
    :param growth_rate: The growth rate per quarter, in percent.
    :param quarters: The number of quarters to project forward.
    :return: The projected budget.
    """
    current = base_amount
    for _ in range(quarters):
        current *= 1 + growth_rate / 100
    return round(current, 2)


@tool
def write_report(growth: float, satisfaction: float, projection: float, audience: str = "board") -> str:
    """
    Writes the closing recommendation of the report.

    :param growth: The sales growth percentage.
    :param satisfaction: The average employee satisfaction.
    :param projection: The projected budget of the next quarter.
    :param audience: [invisible] Who the report is written for, read from the context.
    :return: The recommendation.
    """
    focus = "Expand into new markets" if growth > 10 else "Enhance product development"
    people = "improve employee engagement" if satisfaction < 75 else "keep current satisfaction levels"
    return f"For the {audience}: {focus} and {people}; next quarter's budget is projected at {projection:,.2f}."
