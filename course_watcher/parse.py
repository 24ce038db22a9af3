"""
Parse module for the Course Watcher pipeline.

This module handles parsing the course availability page and extracting
course records (code, name, points, url, faculty).

The page lists one table of courses per faculty, each preceded by an
``h2`` heading. Headings and tables are scanned independently and paired
by position: the Nth table that yields at least one course belongs to the
Nth faculty heading.
"""

from typing import List, Optional, Tuple

from bs4 import BeautifulSoup, Tag

from course_watcher.models import Course
from course_watcher.utils import get_logger


# Module logger
logger = get_logger("parse")


# Candidate containers for the main content, tried in order
CONTENT_SELECTORS = [
    "#vrtx-content",
    "main",
    "article",
    ".vrtx-content",
    "body",
]

# Heading ids containing these markers are page sections, not faculties
NON_FACULTY_MARKERS = ("sporsmal", "kontakt")

UNKNOWN_FACULTY = "Unknown Faculty"

# Separator between course code and course name in link text
CODE_NAME_SEPARATOR = " - "


def parse_course_text(text: str) -> Tuple[str, str]:
    """
    Split course link text into code and name.

    Format is "CODE - Course Name" or just "CODE".

    Args:
        text: Raw link or cell text.

    Returns:
        Tuple of (code, name), both trimmed. Name is empty when the
        separator is missing.
    """
    text = text.strip()
    pos = text.find(CODE_NAME_SEPARATOR)
    if pos == -1:
        return text, ""

    code = text[:pos].strip()
    name = text[pos + len(CODE_NAME_SEPARATOR):].strip()
    return code, name


def parse_points(text: str) -> Optional[float]:
    """
    Parse a points value, accepting a comma as decimal separator.

    Args:
        text: Raw cell text such as "10", "2.5" or "2,5".

    Returns:
        Points as float, or None if the text is not a number.
    """
    normalized = text.strip().replace(",", ".")
    try:
        return float(normalized)
    except ValueError:
        return None


def find_content_region(soup: BeautifulSoup) -> Optional[Tag]:
    """
    Locate the main content element of the page.

    Args:
        soup: Parsed document.

    Returns:
        The first element matched by CONTENT_SELECTORS (in selector
        priority order), or None.
    """
    for selector in CONTENT_SELECTORS:
        element = soup.select_one(selector)
        if element is not None:
            logger.debug(f"Content region found with selector '{selector}'")
            return element

    return None


def extract_faculties(region: Tag) -> List[str]:
    """
    Build the ordered faculty index from section headings.

    Args:
        region: Main content element.

    Returns:
        Faculty names in document order.
    """
    faculties: List[str] = []

    for heading in region.select("h2[id]"):
        heading_id = str(heading.get("id", ""))
        if any(marker in heading_id for marker in NON_FACULTY_MARKERS):
            logger.debug(f"Skipping navigation heading '{heading_id}'")
            continue

        name = heading.get_text().strip()
        if not name:
            continue

        logger.debug(f"Found faculty section #{len(faculties)}: {name} (id={heading_id})")
        faculties.append(name)

    return faculties


def _parse_first_cell(cell: Tag) -> Tuple[str, str, str]:
    """Return (url, code, name) from the first cell of a course row."""
    link = cell.find("a")
    if link is not None:
        href = str(link.get("href") or "").strip()
        code, name = parse_course_text(link.get_text())
        return href, code, name

    code, name = parse_course_text(cell.get_text())
    return "", code, name


def parse_table(table: Tag, faculty: str) -> List[Course]:
    """
    Parse the course rows of one faculty table.

    Rows with fewer than two cells, an empty code or unparseable points
    are skipped.

    Args:
        table: Table element.
        faculty: Faculty label assigned to every course in the table.

    Returns:
        Courses in row order.
    """
    courses: List[Course] = []
    rows_skipped = 0
    parse_errors = 0

    for row in table.select("tr"):
        cells = row.select("td")
        if len(cells) < 2:
            rows_skipped += 1
            continue

        url, code, name = _parse_first_cell(cells[0])

        if not code:
            logger.debug(
                f"Skipping row with empty course code in '{faculty}': "
                f"{cells[0].get_text().strip()!r}"
            )
            rows_skipped += 1
            continue

        points_text = cells[1].get_text()
        points = parse_points(points_text)

        if points is None:
            logger.warning(
                f"Failed to parse points for {code} in '{faculty}': {points_text.strip()!r}"
            )
            parse_errors += 1
            continue

        courses.append(Course(
            code=code,
            name=name,
            points=points,
            url=url,
            faculty=faculty,
        ))
        logger.debug(f"Parsed course {code} ({points:g} pts) in '{faculty}'")

    logger.debug(
        f"Table for '{faculty}': {len(courses)} course(s), "
        f"{rows_skipped} skipped, {parse_errors} parse error(s)"
    )

    return courses


def parse_courses(html: str) -> List[Course]:
    """
    Parse the course availability page into course records.

    Never raises on malformed markup; unparseable rows are skipped and
    logged. The markup is parsed with html.parser, which does not add a
    missing <body>, so a bare fragment outside any content region yields
    no courses.

    Args:
        html: Raw HTML content string.

    Returns:
        Courses in page order (table order, then row order).
    """
    if not html:
        logger.warning("Empty HTML content, no courses to parse")
        return []

    soup = BeautifulSoup(html, "html.parser")

    region = find_content_region(soup)
    if region is None:
        logger.warning("Could not find main content area in HTML document")
        return []

    faculties = extract_faculties(region)
    logger.info(f"Identified {len(faculties)} faculty section(s): {faculties}")

    courses: List[Course] = []
    faculty_index = 0

    for table in region.select("table"):
        if faculty_index < len(faculties):
            faculty = faculties[faculty_index]
        else:
            faculty = UNKNOWN_FACULTY

        table_courses = parse_table(table, faculty)

        # Only tables that produced courses take a faculty slot
        if table_courses:
            courses.extend(table_courses)
            faculty_index += 1

    logger.info(f"Extracted {len(courses)} course(s) from {faculty_index} table(s)")

    return courses
