DEFAULT_CASE_NUMBER_ATTEMPTS = 10
DEFAULT_UPCOMING_LIMIT = 5

DEFAULT_CASE_PREFIXES = {
    "GRIEVANCE": "GR",
    "DISCIPLINARY": "DC",
}
