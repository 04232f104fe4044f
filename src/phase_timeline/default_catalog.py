from __future__ import annotations

from .catalog_models import Phase, PhaseCatalog, TaskTemplate

ADMIN = "admin"
CONSTRUCTION = "construction"
DESIGN = "design"
SALES = "sales"


def _task(key: str, title: str, duration: int, unit: str = "business_days", roles: tuple[str, ...] = (), note: str | None = None) -> TaskTemplate:
    return TaskTemplate(key=key, title=title, duration=duration, unit=unit, roles=frozenset(roles), note=note)  # type: ignore[arg-type]


def default_catalog() -> PhaseCatalog:
    """Standard ground-mounted solar site workflow, from acquisition to construction."""

    return PhaseCatalog(
        name="solar-site",
        phases=(
            Phase(
                key="initial_acquisition",
                title="Project start",
                group="01 Start",
                tasks=(
                    _task("project_acquisition", "Site acquisition", 1, roles=(SALES,)),
                    _task("initial_photography", "Initial photography", 1, roles=(SALES, CONSTRUCTION)),
                ),
            ),
            Phase(
                key="initial_survey",
                title="Initial survey and design",
                group="01 Start",
                tasks=(
                    _task("site_guide_map", "Site guide map", 1, roles=(ADMIN,)),
                    _task("legal_check", "Legal check", 2, roles=(ADMIN,)),
                    _task("hazard_map_check", "Hazard map check", 1, roles=(ADMIN,)),
                    _task("rough_drawing", "Rough drawing", 3, roles=(DESIGN,)),
                ),
            ),
            Phase(
                key="site_confirmation",
                title="Detailed site confirmation",
                group="02 Decision",
                tasks=(
                    _task(
                        "site_survey_photos",
                        "Site survey (missing photos)",
                        3,
                        roles=(CONSTRUCTION,),
                        note="Decide whether land grading is required.",
                    ),
                ),
            ),
            Phase(
                key="submission_decision",
                title="Submission target decision",
                group="02 Decision",
                tasks=(
                    _task(
                        "submission_target",
                        "Choose submission target",
                        1,
                        roles=(SALES,),
                        note="Prefer the primary partner for certain sites or when the site is better than its photos.",
                    ),
                ),
            ),
            Phase(
                key="application_contract",
                title="Applications, contract and detailed design",
                group="03 Application",
                tasks=(
                    _task("drawing_revision", "Drawing revision", 2, roles=(DESIGN,)),
                    _task("power_simulation", "Power simulation", 2, roles=(DESIGN,)),
                    _task("neighbor_greeting", "Neighbour greeting and clearing permission", 3, roles=(SALES,)),
                    _task("land_contract", "Land contract", 2, roles=(SALES, ADMIN)),
                    _task("land_category_change", "Land category change", 2, roles=(ADMIN,)),
                    _task("power_application", "Grid application", 1, roles=(ADMIN,)),
                    _task("legal_application", "Permit application", 2, roles=(ADMIN,)),
                ),
            ),
            Phase(
                key="waiting_period",
                title="Waiting for permit and grid responses",
                group="03 Application",
                tasks=(
                    _task("legal_response", "Permit response", 30, "calendar_days", roles=(ADMIN,)),
                    _task("power_response", "Grid response", 15, "calendar_days", roles=(ADMIN,)),
                ),
            ),
            Phase(
                key="final_design",
                title="Final adjustment",
                group="03 Application",
                tasks=(
                    _task("final_design_simulation", "Final design (re-run simulation)", 3, roles=(DESIGN,)),
                ),
            ),
            Phase(
                key="final_decision",
                title="Final decision and settlement",
                group="04 Settlement",
                tasks=(
                    _task("ground_survey_request", "Ground survey request", 2, roles=(CONSTRUCTION,)),
                    _task("settlement_name_change", "Settlement (title transfer)", 3, roles=(ADMIN, SALES)),
                ),
            ),
            Phase(
                key="construction",
                title="Construction start to completion",
                group="05 Completion",
                duration=90,
                unit="calendar_days",
            ),
        ),
    )
