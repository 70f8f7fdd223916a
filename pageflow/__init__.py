# PageFlow Package
"""
PageFlow - PDF Page Extraction Pipeline

Modules:
- models: Workflow and step records, state machines, job payloads
- workflow_store: Workflow/step persistence (PostgreSQL or in-memory)
- job_queue: At-least-once job queue (Redis or in-memory) and consumers
- rate_limiter: Distributed sliding-window rate limiter
- split_worker: Splits documents into page steps and page jobs
- page_worker: Runs pages through the rate-limited extraction client
- completion: Decides when a workflow is finished
- pipeline: Wiring, submission, status and cancellation
- main: Worker entry point
"""
