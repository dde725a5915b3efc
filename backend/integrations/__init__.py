"""
Integrations package.

Connects SampleTrack to the systems around the biobank:
  - ecrf/             Remote eCRF platform (SOAP session client)
  - field_mapping     Import column → eCRF form item mapping table
  - redcap_loader     Partner CSV export → per-patient records
  - redcap_sync       Per-patient push of imported records into the eCRF
  - aliquot_loader    Processed-samples spreadsheet → aliquot rows
"""
