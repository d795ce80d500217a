"""CLI commands for the hybrid grader.

Commands:
- register-exam: Register an exam definition (answer key + skills)
- grade-exam: Grade a student's submission
- review: Show a stored result
- student-skills: Skill profile across a student's results
- cache-stats / cache-cleanup: Inspect and prune the grade caches
- costs: Cloud spend report
"""

import json
from pathlib import Path

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from grading.config.app_config import get_data_dir, get_db_path
from grading.core.cloud_grader import CloudGrader
from grading.core.cost_tracking import load_cost_tracker
from grading.core.exam_repository import (
    Exam,
    ExamValidationError,
    SubmissionValidationError,
    load_submission,
    save_exam,
    validate_answer_keys,
)
from grading.core.hybrid_grader import grade_submission
from grading.core.question_cache import QuestionCache, SkillAwareCache
from grading.db.database import init_db
from grading.db.results_repository import (
    get_skill_scores_for_result,
    get_student_skill_summary,
    get_test_result,
)
from grading.llm.client import LLMClient

app = typer.Typer(
    name="grade",
    help="Hybrid exam grader: local models first, cloud LLM when needed.",
    no_args_is_help=True,
)

console = Console()


def _data_dir() -> Path:
    """Resolve the data directory and make sure the database exists."""
    data_dir = get_data_dir()
    init_db(get_db_path(data_dir))
    return data_dir


def _truncate(text: str, max_len: int = 120) -> str:
    """Truncate text with ellipsis if too long."""
    if len(text) <= max_len:
        return text
    return text[: max_len - 3] + "..."


def _status_icon(grade: dict) -> str:
    if grade.get("needs_review"):
        return "[yellow]?[/yellow]"
    return "[green]✓[/green]" if grade.get("is_correct") else "[red]✗[/red]"


# =============================================================================
# EXAMS
# =============================================================================


@app.command(name="register-exam")
def register_exam(
    exam_file: Path = typer.Argument(..., help="Exam definition JSON (exam_v1)"),
    force: bool = typer.Option(False, "--force", "-f", help="Overwrite an existing exam"),
) -> None:
    """Register an exam definition.

    Output: data/exams/{exam_id}.json
    """
    data_dir = _data_dir()

    try:
        with open(exam_file, encoding="utf-8") as f:
            exam = Exam.from_dict(json.load(f))
    except (OSError, json.JSONDecodeError, KeyError, ValueError, TypeError) as e:
        console.print(f"[red]✗ Invalid exam file: {e}[/red]")
        raise typer.Exit(code=1)

    try:
        path = save_exam(exam, data_dir, overwrite=force)
    except ExamValidationError as e:
        console.print(f"[red]✗ {e}[/red]")
        if not force:
            console.print("  Use --force to overwrite")
        raise typer.Exit(code=1)

    console.print(f"[green]✓ Exam registered: {exam.exam_id}[/green]")
    console.print(f"  [dim]file:[/dim]      {path}")
    console.print(f"  [dim]questions:[/dim] {len(exam.answer_keys)}")
    console.print(f"  [dim]points:[/dim]    {exam.total_points:g}")
    for warning in validate_answer_keys(exam):
        console.print(f"  [yellow]⚠ {warning}[/yellow]")


@app.command(name="grade-exam")
def grade_exam(
    exam_id: str = typer.Argument(..., help="Exam ID"),
    submission_file: Path = typer.Argument(..., help="Submission JSON (detected answers)"),
    no_persist: bool = typer.Option(False, "--no-persist", help="Do not save the result"),
    provider: str | None = typer.Option(
        None, "--provider", "-p", help="LLM provider for cloud grading"
    ),
    model: str | None = typer.Option(
        None, "--model", "-m", help="Force every cloud question onto this model"
    ),
) -> None:
    """Grade a student's submission.

    Simple questions are graded locally; the rest go to the cloud model.

    Output: data/reports/{result_id}.json
    """
    data_dir = _data_dir()

    try:
        submission = load_submission(submission_file)
    except SubmissionValidationError as e:
        console.print(f"[red]✗ {e}[/red]")
        raise typer.Exit(code=1)

    if submission.exam_id != exam_id:
        console.print(
            f"[red]✗ Submission is for exam '{submission.exam_id}', not '{exam_id}'[/red]"
        )
        raise typer.Exit(code=1)

    cloud = CloudGrader(client_factory=lambda: LLMClient(provider=provider)) if provider else None

    console.print(f"[blue]Grading {submission.student_id} on {exam_id}...[/blue]")

    result = grade_submission(
        submission,
        data_dir=data_dir,
        cloud_grader=cloud,
        cache=QuestionCache(),
        skill_cache=SkillAwareCache(),
        persist=not no_persist,
        model=model,
    )

    if not result.success or result.results is None:
        console.print(f"[red]✗ {result.message}[/red]")
        for warning in result.warnings:
            console.print(f"  [yellow]• {warning}[/yellow]")
        raise typer.Exit(code=1)

    results = result.results
    console.print(f"[green]✓ {result.message}[/green]")
    if result.result_id and not no_persist:
        console.print(f"  [dim]result:[/dim]     {result.result_id}")
    if result.report_path:
        console.print(f"  [dim]file:[/dim]       {result.report_path}")
    console.print(f"  [dim]local:[/dim]      {results.cost_analysis.local_questions}")
    console.print(f"  [dim]cloud:[/dim]      {results.cost_analysis.cloud_questions}")
    console.print(f"  [dim]cache hits:[/dim] {results.summary.cache_hits}")
    console.print(f"  [dim]confidence:[/dim] {results.summary.combined_confidence:.0%}")
    console.print(f"  [dim]cost:[/dim]       {results.cost_analysis.cost_breakdown}")

    console.print("\n[bold]Per question:[/bold]")
    for grade in results.merged_results:
        data = grade.to_dict()
        console.print(
            f"  {_status_icon(data)} Q{grade.question_number}: "
            f"{grade.points_earned:g}/{grade.points_possible:g} "
            f"[dim]({grade.grading_method})[/dim] {_truncate(grade.reasoning, 60)}"
        )

    for warning in result.warnings:
        console.print(f"  [yellow]⚠ {warning}[/yellow]")


@app.command()
def review(
    result_id: str = typer.Argument(..., help="Result ID printed by grade-exam"),
) -> None:
    """Review a stored result with Rich formatting.

    Displays a summary panel, a table of per-question grades and the
    skill scores.
    """
    _data_dir()

    record = get_test_result(result_id)
    if record is None:
        console.print(f"[yellow]⚠ Result not found: {result_id}[/yellow]")
        raise typer.Exit(code=1)

    summary = record.results.get("summary", {})
    header = (
        f"[bold]{record.percentage:.1f}%[/bold] "
        f"({record.points_earned:g}/{record.points_possible:g} points)\n"
        f"Student: {record.student_name or record.student_id} | Exam: {record.exam_id}\n"
        f"Local: {record.local_questions} | Cloud: {record.cloud_questions} | "
        f"Confidence: {record.combined_confidence:.0%} | "
        f"Needs review: {summary.get('needs_review', 0)}"
    )
    console.print(Panel(header, title=f"[bold]{result_id}[/bold]", expand=False))

    table = Table(show_header=True, header_style="bold")
    table.add_column("Q", style="cyan", width=4)
    table.add_column("Status", justify="center", width=8)
    table.add_column("Points", justify="center", width=10)
    table.add_column("Method", width=22)
    table.add_column("Reasoning", width=60)

    for grade in record.results.get("merged_results", []):
        table.add_row(
            str(grade["question_number"]),
            _status_icon(grade),
            f"{grade['points_earned']:g}/{grade['points_possible']:g}",
            grade["grading_method"],
            _truncate(grade.get("reasoning", ""), 80),
        )
    console.print(table)

    skills = get_skill_scores_for_result(result_id)
    if skills:
        skill_table = Table(show_header=True, header_style="bold", title="Skills")
        skill_table.add_column("Skill", style="cyan")
        skill_table.add_column("Type")
        skill_table.add_column("Score", justify="right")
        skill_table.add_column("Correct", justify="center")
        for s in skills:
            skill_table.add_row(
                s["skill_name"],
                s["skill_type"],
                f"{s['score']:.1f}%",
                f"{s['questions_correct']}/{s['questions_attempted']}",
            )
        console.print(skill_table)

    if record.report_path:
        console.print(f"\n[dim]File:[/dim] {record.report_path}")


@app.command(name="student-skills")
def student_skills(
    student_id: str = typer.Argument(..., help="Student ID"),
) -> None:
    """Average score per skill across all of a student's results."""
    _data_dir()

    skills = get_student_skill_summary(student_id)
    if not skills:
        console.print(f"[yellow]⚠ No skill scores for student: {student_id}[/yellow]")
        raise typer.Exit(code=1)

    table = Table(show_header=True, header_style="bold", title=f"Skills: {student_id}")
    table.add_column("Skill", style="cyan")
    table.add_column("Type")
    table.add_column("Average", justify="right")
    table.add_column("Tests", justify="center")
    table.add_column("Correct", justify="center")
    for s in skills:
        table.add_row(
            s["skill_name"],
            s["skill_type"],
            f"{s['average_score']:.1f}%",
            str(s["results_count"]),
            f"{s['questions_correct']}/{s['questions_attempted']}",
        )
    console.print(table)


# =============================================================================
# CACHE AND COSTS
# =============================================================================


@app.command(name="cache-stats")
def cache_stats() -> None:
    """Show grade cache statistics."""
    _data_dir()

    stats = QuestionCache().stats()
    skill_stats = SkillAwareCache().stats()

    console.print("[bold]Question cache[/bold]")
    console.print(f"  [dim]entries:[/dim]   {stats['total_entries']}")
    console.print(f"  [dim]local:[/dim]     {stats['local_entries']}")
    console.print(f"  [dim]cloud:[/dim]     {stats['cloud_entries']}")
    console.print(f"  [dim]hit rate:[/dim]  {stats['hit_rate']:.2f}")
    console.print(f"  [dim]savings:[/dim]   ${stats['estimated_savings']:.2f}")
    for exam in stats["top_exams"]:
        console.print(f"    {exam['exam_id']}: {exam['entries']}")

    console.print("\n[bold]Skill cache[/bold]")
    console.print(f"  [dim]entries:[/dim]   {skill_stats['total_entries']}")
    for combo in skill_stats["top_skill_combinations"]:
        console.print(f"    {combo['skills']}: {combo['entries']}")


@app.command(name="cache-cleanup")
def cache_cleanup() -> None:
    """Delete expired cache entries."""
    _data_dir()

    questions = QuestionCache().cleanup_expired()
    skills = SkillAwareCache().cleanup_expired()
    console.print(f"[green]✓ Removed {questions} question and {skills} skill cache entries[/green]")


@app.command()
def costs() -> None:
    """Cloud spend: today, last 7 days and all time."""
    _data_dir()

    report = load_cost_tracker().report()

    table = Table(show_header=True, header_style="bold", title="Cloud costs")
    table.add_column("Period", style="cyan")
    table.add_column("Runs", justify="right")
    table.add_column("Cost", justify="right")
    table.add_column("Savings", justify="right")
    table.add_column("Simple/Complex", justify="center")
    table.add_column("Fallbacks", justify="right")
    for label, key in (("Today", "today"), ("Last 7 days", "last_7_days"), ("All time", "all_time")):
        s = report[key]
        table.add_row(
            label,
            str(s["runs"]),
            f"${s['total_cost']:.4f}",
            f"${s['total_savings']:.4f}",
            f"{s['simple_questions']}/{s['complex_questions']}",
            str(s["fallbacks"]),
        )
    console.print(table)


if __name__ == "__main__":
    app()
