"""
Pre-arrival document compliance.

- Every port call carries a fixed checklist of documents, each owned by the
  ship or the office
- Ship-submitted evidence is reviewed by the office (approve / reject with reason)
- Approved evidence is bundled into a downloadable or shareable pack
- Meaningful actions are recorded to the append-only audit trail
"""
