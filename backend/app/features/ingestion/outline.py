"""
Ingestion feature: local document outline.

Groups knowledge points into sections by page range without any provider
call: a point joins the current section when its pages touch or overlap the
section's range, otherwise it opens a new section.
"""

from app.features.ingestion.schemas import DocumentOutline, KnowledgePoint, OutlineSection


def _page_range(point: KnowledgePoint) -> tuple[int, int] | None:
    pages = [p for p in point.source_pages if p > 0]
    if not pages:
        return None
    return min(pages), max(pages)


def _touches(page_range: tuple[int, int], section: tuple[int, int]) -> bool:
    return page_range[0] <= section[1] + 1 and page_range[1] >= section[0] - 1


def group_into_sections(points: list[KnowledgePoint]) -> list[list[KnowledgePoint]]:
    groups: list[list[KnowledgePoint]] = []
    section: tuple[int, int] | None = None

    for point in points:
        page_range = _page_range(point)
        if groups and (page_range is None or section is None or _touches(page_range, section)):
            groups[-1].append(point)
            if page_range is not None:
                section = page_range if section is None else (
                    min(section[0], page_range[0]), max(section[1], page_range[1])
                )
            continue
        groups.append([point])
        section = page_range

    return groups


def _section_pages(group: list[KnowledgePoint]) -> list[int]:
    return sorted({p for point in group for p in point.source_pages if p > 0})


def build_outline(document_id: str, points: list[KnowledgePoint], subject: str = "") -> DocumentOutline:
    sections = []
    for group in group_into_sections(points):
        titles = [p.title for p in group]
        sections.append(OutlineSection(
            title=group[0].title,
            knowledge_points=titles,
            brief_description=f"Covers {', '.join(titles)}.",
            source_pages=_section_pages(group),
        ))

    return DocumentOutline(
        document_id=document_id,
        title=sections[0].title if sections else "Untitled Document",
        subject=subject,
        total_knowledge_points=len(points),
        sections=sections,
        summary=f"Document covering {len(points)} knowledge points across {len(sections)} sections.",
    )
