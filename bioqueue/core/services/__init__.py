"""Pipeline services composed by the JobFacade."""
