from typing import Any

Taxonomy = tuple[tuple[str, tuple[str, ...]], ...]

DEFAULT_TAXONOMY: Taxonomy = (
    ("Income", ("Salary", "Side Hustle", "Freelance", "Dividends", "Interest", "Grants/Aid", "Other")),
    (
        "Living Expenses",
        ("Rent", "Utilities", "Internet", "Phone", "Insurance", "Groceries", "Household", "Streaming", "Software"),
    ),
    (
        "Transport",
        (
            "Bike/Car Fuel",
            "Bike/Car Maintenance",
            "Bike/Car Repair",
            "Bike/Car Parking",
            "Bike/Car Toll",
            "Public Transport",
            "Taxi/Ridehailing",
        ),
    ),
    (
        "Medical & Health",
        ("Doctor General", "Doctor Specialist", "Dentist", "Supplements", "Health Insurance", "Medication"),
    ),
    (
        "Lifestyle & Leisure",
        (
            "Coffee",
            "Restaurant",
            "Snacks/Fast Food",
            "Gym",
            "Fitness/Supplies",
            "Sports Equipment",
            "Gadgets/Tech",
            "Games",
            "Clothes",
            "Accessories",
            "Furnishing",
            "Vacation",
            "Flights",
            "Accommodation",
            "Recreational Activities",
        ),
    ),
    (
        "Financial",
        ("Loan Repayment", "Credit Card", "Interest Charges", "Donation", "Emergency", "Stocks/ETF", "Retirement"),
    ),
    ("Other", ("Bank Transfer (Not Reported)", "Cash Withdraw (Not Reported)", "Unstated")),
)


def seed_taxonomy(persistence: Any, taxonomy: Taxonomy) -> dict[str, int]:
    """Upsert every category and subcategory of ``taxonomy``.

    Existing rows are left alone, so running it twice creates nothing the
    second time. Returns how many rows were created.
    """
    created = {"categories": 0, "subcategories": 0}
    for category_name, subcategory_names in taxonomy:
        category, was_created = persistence.get_or_create_category(category_name)
        created["categories"] += int(was_created)
        for sub_name in subcategory_names:
            _, was_created = persistence.get_or_create_subcategory(sub_name, category["id"])
            created["subcategories"] += int(was_created)
    return created
