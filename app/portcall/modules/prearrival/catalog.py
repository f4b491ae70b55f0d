"""
Static catalog of pre-arrival documents.

Order matters: it is the display order of the checklist and the tie-break
order when ship-owned slots are sorted ahead of office-owned ones.
"""
from __future__ import annotations

from dataclasses import dataclass

from .errors import DocumentValidationError

SHIP = "ship"
OFFICE = "office"
OWNING_PARTIES = (SHIP, OFFICE)


@dataclass(frozen=True)
class DocumentDefinition:
    id: str
    display_name: str
    owning_party: str

    @property
    def is_ship_owned(self) -> bool:
        return self.owning_party == SHIP


DOCUMENT_CATALOG: tuple[DocumentDefinition, ...] = (
    DocumentDefinition("pre_arrival_form", "Pre-Arrival Form (Signed/Sealed)", SHIP),
    DocumentDefinition("health_decl", "Maritime Declaration of Health", SHIP),
    DocumentDefinition("temp_14_days", "14-Days Crew Temperature List", SHIP),
    DocumentDefinition("crew_health_decl", "Crew Health Declaration", SHIP),
    DocumentDefinition("arrival_nil_cargo", "Arrival NIL Cargo", SHIP),
    DocumentDefinition("arms_decl", "Arms & Ammunition Declaration", SHIP),
    DocumentDefinition("nil_list", "NIL List", SHIP),
    DocumentDefinition("bond_store", "Bond Store List", SHIP),
    DocumentDefinition("rob_dg", "ROB & DG Format", SHIP),
    DocumentDefinition("imo_maritime_decl", "IMO Maritime Declaration", SHIP),
    DocumentDefinition("registry_cert", "Registry Certificate", OFFICE),
    DocumentDefinition("tonnage_cert", "Tonnage Certificate", OFFICE),
    DocumentDefinition("isps_ship", "Ship ISPS Certificate", OFFICE),
    DocumentDefinition("pi_cert", "P&I Certificate", OFFICE),
    DocumentDefinition("msm_cert", "Minimum Safe Manning Certificate", OFFICE),
    DocumentDefinition("last_10_ports", "Last 10 Ports of Call", SHIP),
    DocumentDefinition("ships_particulars", "Ship's Particulars", OFFICE),
    DocumentDefinition("hull_machinery", "Hull & Machinery Certificate", OFFICE),
    DocumentDefinition("safety_equipment", "Safety Equipment Certificate", OFFICE),
    DocumentDefinition("sanitation_cert", "Ship Sanitation Certificate", OFFICE),
    DocumentDefinition("medical_chest", "Medical Chest Certificate", OFFICE),
    DocumentDefinition("isps_officer", "Officer ISPS Certificate", OFFICE),
    DocumentDefinition("port_clearance", "Port Clearance (Last PC)", SHIP),
    DocumentDefinition("imo_crew_list", "IMO Crew List (Word/Pdf)", SHIP),
    DocumentDefinition("security_report", "Ship's Pre-Arrival Security Report", OFFICE),
)

_BY_ID = {d.id: d for d in DOCUMENT_CATALOG}


def get_definition(doc_id: str) -> DocumentDefinition:
    d = _BY_ID.get((doc_id or "").strip())
    if d is None:
        raise DocumentValidationError(f"Unknown document id: {doc_id!r}")
    return d


def find_definition(doc_id: str) -> DocumentDefinition | None:
    return _BY_ID.get((doc_id or "").strip())
