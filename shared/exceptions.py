"""RFC 9457 Problem Details exception hierarchy.

All API errors extend ProblemDetailError and are converted to
application/problem+json responses by the exception handler middleware.
Engine-level failures (vault, provider) live next to their components and
are translated into these at the router boundary.
"""

PROBLEM_BASE_URI = "https://leaderboard.example/problems"


class ProblemDetailError(Exception):
    def __init__(
        self,
        type_uri: str,
        title: str,
        status: int,
        detail: str,
        violations: list[dict] | None = None,
    ):
        self.type_uri = type_uri
        self.title = title
        self.status = status
        self.detail = detail
        self.violations = violations
        super().__init__(detail)


class NotFoundError(ProblemDetailError):
    def __init__(self, detail: str):
        super().__init__(
            type_uri=f"{PROBLEM_BASE_URI}/not-found",
            title="Not Found",
            status=404,
            detail=detail,
        )


class UnauthorizedError(ProblemDetailError):
    def __init__(self, detail: str = "Authentication is required for this operation."):
        super().__init__(
            type_uri=f"{PROBLEM_BASE_URI}/unauthorized",
            title="Unauthorized",
            status=401,
            detail=detail,
        )


class InvalidForceScopeError(ProblemDetailError):
    def __init__(self, force: str, allowed: set[str]):
        allowed_str = ", ".join(sorted(allowed))
        super().__init__(
            type_uri=f"{PROBLEM_BASE_URI}/invalid-force-scope",
            title="Invalid Force Parameter",
            status=400,
            detail=f"Force value '{force}' is not supported. Must be one of: {allowed_str}",
        )


class MemberIdentityError(ProblemDetailError):
    def __init__(self, detail: str = "Unable to determine the member id from the provider profile."):
        super().__init__(
            type_uri=f"{PROBLEM_BASE_URI}/member-identity",
            title="Member Identity Unavailable",
            status=400,
            detail=detail,
        )


class MissingMemberSelectorError(ProblemDetailError):
    def __init__(self):
        super().__init__(
            type_uri=f"{PROBLEM_BASE_URI}/missing-member-selector",
            title="Missing Member Selector",
            status=400,
            detail="Provide either 'member_id' or 'whoop_user_id'.",
        )


class ProviderUnavailableError(ProblemDetailError):
    def __init__(self, detail: str = "The fitness provider could not be reached. Try again later."):
        super().__init__(
            type_uri=f"{PROBLEM_BASE_URI}/provider-unavailable",
            title="Provider Unavailable",
            status=502,
            detail=detail,
        )
